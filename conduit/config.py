"""Application configuration. All env vars defined here with defaults."""

from pydantic_settings import BaseSettings
from typing import Optional


class ConduitConfig(BaseSettings):
    # ── App ──
    log_level: str = "INFO"

    # ── Expressions ──
    expression_timeout_ms: int = 1000           # wall-clock budget per evaluation
    expression_max_steps: int = 100_000         # interpreter node budget per evaluation
    expression_max_size: int = 10_000_000       # longest string or array an expression may build

    # ── Execution ──
    loop_concurrency: int = 5                   # max in-flight connector calls per loop step
    max_pagination_pages: int = 500             # hard ceiling per paginated step
    default_page_size: int = 50
    default_run_timeout_seconds: Optional[float] = None
    webhook_timeout_seconds: float = 10.0

    # ── HTTP connector ──
    http_timeout_seconds: float = 60.0
    http_max_retries: int = 1
    http_retry_on: list[int] = [429, 500, 502, 503, 504]
    http_response_size_limit_kb: int = 10240

    # ── Credentials ──
    credential_encryption_key: str = ""         # Fernet key; ephemeral if empty

    model_config = {"env_prefix": "CONDUIT_", "env_file": ".env", "extra": "ignore"}


config = ConduitConfig()

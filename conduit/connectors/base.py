"""Connector protocol and URL-scheme routing.

A connector performs one external call for a request step. The engine hands
it the step config and the fully resolved inputs (``url``, ``method``,
``headers``, ``query_params``, ``body``) and gets back a
:class:`~conduit.types.ConnectorResult`.
"""

import logging
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlsplit

from conduit.exceptions import ConnectorError
from conduit.types import ConnectorResult, RequestStepConfig

logger = logging.getLogger(__name__)

SUPPORTED_PROTOCOLS = ("http", "https", "postgres", "postgresql", "ftp", "ftps", "sftp", "smb")

UNSUPPORTED_PROTOCOL_MESSAGE = (
    "Unsupported URL protocol. URL must start with a supported protocol "
    "(http://, https://, postgres://, postgresql://, ftp://, ftps://, sftp://, smb://)."
)


@runtime_checkable
class Connector(Protocol):
    """One protocol family (HTTP, SQL, file transfer).

    Implementations report remote failures as ``success=False`` results.
    Raising is also accepted; the registry converts the exception.
    """

    async def execute(self, step_config: RequestStepConfig, resolved_inputs: dict[str, Any]) -> ConnectorResult:
        ...


def url_scheme(url: str) -> str:
    return urlsplit(url.strip()).scheme.lower()


class ConnectorRegistry:
    """Routes a resolved request to the connector registered for its URL scheme."""

    def __init__(self):
        self._connectors: dict[str, Connector] = {}

    def register(self, connector: Connector, *schemes: str) -> None:
        """Register *connector* for each of *schemes* (``"https"``, ``"postgres"``...)."""
        if not schemes:
            raise ValueError("At least one URL scheme is required")
        for scheme in schemes:
            self._connectors[scheme.lower()] = connector

    def unregister(self, scheme: str) -> None:
        self._connectors.pop(scheme.lower(), None)

    def schemes(self) -> list[str]:
        return sorted(self._connectors)

    def get(self, url: str) -> Connector:
        """Connector for *url*.

        Raises:
            ConnectorError: the scheme is unsupported, or supported but nothing
                is registered for it in this process.
        """
        scheme = url_scheme(url)
        connector = self._connectors.get(scheme)
        if connector is not None:
            return connector
        if scheme in SUPPORTED_PROTOCOLS:
            raise ConnectorError(
                f"No connector registered for protocol '{scheme}://'",
                protocol=scheme,
                details={"url_scheme": scheme, "registered": self.schemes()},
            )
        raise ConnectorError(
            UNSUPPORTED_PROTOCOL_MESSAGE,
            protocol=scheme,
            details={"url_scheme": scheme, "registered": self.schemes()},
        )

    async def execute(self, step_config: RequestStepConfig, resolved_inputs: dict[str, Any]) -> ConnectorResult:
        """Route and execute. Connector exceptions come back as failed results."""
        connector = self.get(resolved_inputs["url"])
        try:
            return await connector.execute(step_config, resolved_inputs)
        except ConnectorError as exc:
            return ConnectorResult(success=False, error=str(exc), status_code=exc.status_code)
        except Exception as exc:
            logger.warning(f"[Connectors] {type(connector).__name__} raised {type(exc).__name__}: {exc}")
            return ConnectorResult(success=False, error=str(exc) or type(exc).__name__)

"""Test fixtures: fake connector, engine wiring, credential store, sample tools.

All tests should use these fixtures for consistency.
"""

import asyncio
from typing import Any, Callable, Optional

import pytest
from cryptography.fernet import Fernet

from conduit.config import ConduitConfig
from conduit.connectors import ConnectorRegistry
from conduit.core import ExpressionResolver, ToolEngine
from conduit.credentials import CredentialEncryption, SystemCredentialStore
from conduit.expressions import ExpressionSandbox
from conduit.types import ConnectorResult


@pytest.fixture
def config():
    """Test configuration with small, fast limits."""
    return ConduitConfig(
        log_level="DEBUG",
        expression_timeout_ms=1000,
        expression_max_steps=100_000,
        loop_concurrency=3,
        max_pagination_pages=20,
        http_max_retries=0,
    )


@pytest.fixture
def sandbox():
    return ExpressionSandbox(timeout_ms=1000, max_steps=100_000)


@pytest.fixture
def resolver(sandbox):
    return ExpressionResolver(sandbox)


# ── Credentials ──────────────────────────────────────────────────────────────


@pytest.fixture
def encryption():
    return CredentialEncryption(key=Fernet.generate_key().decode())


@pytest.fixture
def credential_store(encryption):
    return SystemCredentialStore(encryption)


# ── Fake connector ───────────────────────────────────────────────────────────


class FakeConnector:
    """Connector that answers from a handler and records every call.

    ``handler(inputs)`` returns a ConnectorResult, plain data (wrapped as a
    success), or raises ConnectorError. Without a handler every call
    echoes its resolved inputs.
    """

    def __init__(self, handler: Optional[Callable[[dict], Any]] = None, delay: float = 0.0):
        self.handler = handler
        self.delay = delay
        self.calls: list[dict] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def execute(self, step_config, resolved_inputs: dict) -> ConnectorResult:
        self.calls.append(resolved_inputs)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.handler is None:
                return ConnectorResult(success=True, data=resolved_inputs, status_code=200)
            result = self.handler(resolved_inputs)
            if isinstance(result, ConnectorResult):
                return result
            return ConnectorResult(success=True, data=result, status_code=200)
        finally:
            self.in_flight -= 1


@pytest.fixture
def fake_connector():
    return FakeConnector()


@pytest.fixture
def connector_factory():
    """The FakeConnector class, for tests that need a custom handler."""
    return FakeConnector


@pytest.fixture
def make_engine(config, credential_store):
    """Build a ToolEngine whose https:// traffic goes to *connector*."""

    def _make(connector: FakeConnector, **kwargs) -> ToolEngine:
        registry = ConnectorRegistry()
        registry.register(connector, "https", "http")
        kwargs.setdefault("credential_store", credential_store)
        return ToolEngine(connectors=registry, config=config, **kwargs)

    return _make


@pytest.fixture
def engine(make_engine, fake_connector):
    return make_engine(fake_connector)


# ── Sample tools ─────────────────────────────────────────────────────────────


@pytest.fixture
def sample_tool() -> dict:
    """Two-step tool: list users, then fetch each user's orders."""
    return {
        "id": "user-orders",
        "instruction": "Fetch every user's orders",
        "steps": [
            {
                "id": "getUsers",
                "config": {
                    "type": "request",
                    "systemId": "crm",
                    "url": "https://crm.example.com/users",
                    "method": "GET",
                    "headers": {"Authorization": "Bearer <<crm_token>>"},
                },
            },
            {
                "id": "getOrders",
                "dataSelector": "(sourceData) => sourceData.getUsers.data.users",
                "config": {
                    "type": "request",
                    "systemId": "shop",
                    "url": "https://shop.example.com/users/<<(sourceData) => sourceData.currentItem.id>>/orders",
                    "method": "GET",
                },
            },
        ],
        "outputTransform": "(sourceData) => sourceData.getOrders.map(r => r.data)",
    }

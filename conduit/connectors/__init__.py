"""Connectors: one per protocol family, routed by URL scheme."""

from conduit.connectors.base import Connector, ConnectorRegistry, SUPPORTED_PROTOCOLS
from conduit.connectors.http import HttpConnector


def default_registry() -> ConnectorRegistry:
    """Registry with the bundled HTTP connector. SQL and file-transfer
    connectors are registered by the embedding application."""
    registry = ConnectorRegistry()
    registry.register(HttpConnector(), *HttpConnector.protocols)
    return registry


__all__ = ["Connector", "ConnectorRegistry", "HttpConnector", "SUPPORTED_PROTOCOLS", "default_registry"]

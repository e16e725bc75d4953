"""
Connectors Package for the IAM Reconciler.

This package provides the provisioning backends the engine reconciles
against: AWS (STS, CloudFormation, IAM) and an in-memory mock.
"""

from .base_connector import BaseConnector, ConnectorResult, MockConnector


def _get_connector_class(system: str = "aws", mock: bool = False):
    """Get connector class for a system, with the mock backend on request."""
    if mock:
        return MockConnector

    if system == "aws":
        from .aws_connector import AWSConnector

        return AWSConnector

    raise ValueError(f"Unknown backend: {system}")


def create_connector(config=None, mock_mode: bool = True) -> BaseConnector:
    """Build the connector for the configured backend."""
    config = config or {}
    connector_class = _get_connector_class(config.get("backend", "aws"), mock=mock_mode)
    return connector_class(config, mock_mode=mock_mode)


__all__ = [
    "BaseConnector",
    "MockConnector",
    "ConnectorResult",
    "create_connector",
]

"""
Connectors Package for the CSPM integration engine.

This package provides the AWS account connector, the assume-role session
provider and an in-memory backend for mock runs.
"""

from typing import Any, Optional

from .aws_connector import AWSConnector
from .aws_session import SessionProvider
from .base_connector import MUTATING_OPERATIONS, BaseConnector
from .mock_connector import MockAccount, MockAWSConnector, MockSessionProvider


def get_session_provider(settings: Optional[Any] = None, mock: bool = False):
    """Get a session provider for the configured backend."""
    if mock:
        return MockSessionProvider(region=settings.region if settings else "us-east-1")
    if settings is None:
        return SessionProvider()
    return SessionProvider.from_settings(settings)


__all__ = [
    "AWSConnector",
    "BaseConnector",
    "MockAccount",
    "MockAWSConnector",
    "MockSessionProvider",
    "MUTATING_OPERATIONS",
    "SessionProvider",
    "get_session_provider",
]

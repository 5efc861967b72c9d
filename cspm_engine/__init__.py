"""
CSPM Integration Role Engine

Provisions and tears down the cross-account IAM role a security platform
assumes to read inventory and audit data from a customer AWS account.

The reconciler converges a fixed topology (role, inline read-only policy,
managed policy attachments and an optional CloudTrail bucket policy) against
live IAM state, idempotently and with compensating rollback.
"""

__version__ = "1.0.0"
__author__ = "CSPM Engine Team"
__email__ = "team@example.com"

from .connectors import AWSConnector, MockSessionProvider, SessionProvider
from .engine import Reconciler
from .errors import ReconcileError
from .models import IntegrationConfig, ReconciliationResult

__all__ = [
    "AWSConnector",
    "IntegrationConfig",
    "MockSessionProvider",
    "ReconcileError",
    "Reconciler",
    "ReconciliationResult",
    "SessionProvider",
]

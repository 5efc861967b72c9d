"""
Shared fixtures for the CSPM engine tests.
"""

import pytest

from cspm_engine.connectors import MockSessionProvider
from cspm_engine.engine import Reconciler
from cspm_engine.models import IntegrationConfig

ACCOUNT_ID = "123456789012"
UPT_ACCOUNT_ID = "012345678912"
EXTERNAL_ID = "6a9375c1-47c0-470c-9217-d2f9d2d185f1"
INTEGRATION_NAME = "uptcloud"
BUCKET_NAME = "uptycs-test-bucket"
BUCKET_REGION = "us-west-2"

VIEW_ONLY_ARN = "arn:aws:iam::aws:policy/job-function/ViewOnlyAccess"
SECURITY_AUDIT_ARN = "arn:aws:iam::aws:policy/SecurityAudit"
BUCKET_POLICY_ARN = f"arn:aws:iam::{ACCOUNT_ID}:policy/{INTEGRATION_NAME}-CloudTrailBucketPolicy"


@pytest.fixture
def provider():
    """In-memory session provider."""
    return MockSessionProvider()


@pytest.fixture
def account(provider):
    """Simulated target account."""
    return provider.account(ACCOUNT_ID)


@pytest.fixture
def reconciler(provider, account):
    """Reconciler bound to the simulated target account."""
    return Reconciler.for_account(provider, ACCOUNT_ID)


@pytest.fixture
def make_config():
    """Factory for integration configs with sensible defaults."""

    def _make(**overrides):
        fields = {
            "integration_name": INTEGRATION_NAME,
            "account_id": ACCOUNT_ID,
            "upt_account_id": UPT_ACCOUNT_ID,
            "external_id": EXTERNAL_ID,
        }
        fields.update(overrides)
        return IntegrationConfig(**fields)

    return _make

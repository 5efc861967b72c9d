"""
Core data models for the CSPM integration engine.

This module defines the Pydantic models used throughout the system for the
desired integration state, reconciliation results, and audit records.
"""

import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

ACCOUNT_ID_PATTERN = re.compile(r"^\d{12}$")
ROLE_NAME_PATTERN = re.compile(r"^[\w+=,.@-]{1,64}$")
EXTERNAL_ID_PATTERN = re.compile(r"^[\w+=,.@:/-]{2,1224}$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconcileOperation(str, Enum):
    """Top-level operations exposed by the reconciler."""
    CONVERGE = "CONVERGE"
    TEARDOWN = "TEARDOWN"
    REPLACE = "REPLACE"


class IntegrationConfig(BaseModel):
    """Desired state of one integration role in one target account."""
    integration_name: str = Field(..., description="Role name, unique within the account")
    account_id: str = Field(..., description="Target AWS account ID")
    upt_account_id: str = Field(..., description="Account ID of the principal allowed to assume the role")
    external_id: str = Field(..., description="External ID required by the trust policy")
    org_access_role_name: Optional[str] = Field(
        None, description="Role assumed in the target account (organization default when unset)"
    )
    policy_document: Optional[str] = Field(
        None, description="Inline read-only policy override; empty means the built-in document"
    )
    bucket_name: Optional[str] = Field(None, description="CloudTrail bucket to grant read access to")
    bucket_region: Optional[str] = Field(None, description="Region of the CloudTrail bucket")
    is_update: bool = Field(False, description="Skip compensating rollback on failure")

    @field_validator("account_id", "upt_account_id")
    @classmethod
    def validate_account_id(cls, v: str) -> str:
        """AWS account IDs are exactly twelve digits."""
        if not ACCOUNT_ID_PATTERN.match(v):
            raise ValueError(f"Invalid AWS account ID: {v!r}")
        return v

    @field_validator("integration_name")
    @classmethod
    def validate_integration_name(cls, v: str) -> str:
        if not ROLE_NAME_PATTERN.match(v):
            raise ValueError(f"Invalid IAM role name: {v!r}")
        return v

    @field_validator("external_id")
    @classmethod
    def validate_external_id(cls, v: str) -> str:
        if not EXTERNAL_ID_PATTERN.match(v):
            raise ValueError("External ID must be 2-1224 characters of [\\w+=,.@:/-]")
        return v

    @field_validator("org_access_role_name", "bucket_name", "bucket_region", "policy_document")
    @classmethod
    def empty_as_none(cls, v: Optional[str]) -> Optional[str]:
        """Blank strings from config files behave like unset fields."""
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("policy_document")
    @classmethod
    def validate_policy_document(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            document = json.loads(v)
        except json.JSONDecodeError as e:
            raise ValueError(f"policy_document is not valid JSON: {e}")
        if not isinstance(document, dict) or "Statement" not in document:
            raise ValueError("policy_document must be a JSON object with a Statement")
        return v

    @model_validator(mode="after")
    def validate_bucket(self) -> "IntegrationConfig":
        if self.bucket_name and not self.bucket_region:
            raise ValueError("bucket_region is required when bucket_name is set")
        return self


class AttachedPolicy(BaseModel):
    """A managed policy attached to a role."""
    policy_name: str
    policy_arn: str


class ReconciliationResult(BaseModel):
    """Outcome of a successful converge, teardown or replace."""
    operation: ReconcileOperation
    integration_name: str
    account_id: Optional[str] = None
    role_arn: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    role_created: bool = False
    trust_policy_drift: bool = False
    actions_taken: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        """True when at least one mutating call was issued."""
        return any(a.get("mutating") and a.get("success") for a in self.actions_taken)


class AuditRecord(BaseModel):
    """Audit record for one reconciler invocation."""
    id: str = Field(..., description="Unique audit record ID")
    timestamp: datetime = Field(default_factory=_utcnow)
    operation: ReconcileOperation
    integration_name: str
    account_id: Optional[str] = None
    success: bool = Field(..., description="Whether the operation succeeded")
    role_arn: Optional[str] = None
    error_type: Optional[str] = Field(None, description="Exception class name if failed")
    error_message: Optional[str] = Field(None, description="Error details if failed")
    rolled_back: bool = False
    actions: List[Dict[str, Any]] = Field(default_factory=list)

"""
Mock connector for the CSPM integration engine.

Simulates the IAM and S3 state of AWS accounts in memory, following the error
behaviour of the real APIs closely enough to exercise the reconciler without
network access.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from ..engine.policy_documents import role_arn
from ..errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    ReconcileError,
    ResourceExistsConflict,
)
from ..models import AttachedPolicy
from .base_connector import MUTATING_OPERATIONS, BaseConnector

logger = logging.getLogger(__name__)


class MockAccount:
    """In-memory IAM and S3 state of one account."""

    def __init__(self, account_id: str, buckets: Optional[Set[str]] = None):
        self.account_id = account_id
        self.roles: Dict[str, Dict[str, Any]] = {}
        self.policies: Dict[str, Dict[str, Any]] = {}  # policy arn -> policy
        self.buckets: Set[str] = set(buckets or ())
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.failures: Dict[str, ReconcileError] = {}  # operation -> error to raise

    def fail_on(self, operation: str, error: ReconcileError) -> None:
        """Make the next call to ``operation`` raise ``error``."""
        self.failures[operation] = error

    def mutating_calls(self) -> List[Tuple[str, Dict[str, Any]]]:
        return [c for c in self.calls if c[0] in MUTATING_OPERATIONS]

    def operations(self) -> List[str]:
        return [c[0] for c in self.calls]

    def reset_calls(self) -> None:
        self.calls.clear()

    def get_mock_state(self) -> Dict[str, Any]:
        """Get current mock state for inspection."""
        return {
            "roles": self.roles,
            "policies": self.policies,
            "buckets": sorted(self.buckets),
        }


class MockAWSConnector(BaseConnector):
    """Connector backed by a MockAccount."""

    def __init__(self, account: MockAccount, region: Optional[str] = None):
        super().__init__(account.account_id, region, mock_mode=True)
        self.account = account

    def _record(self, operation: str, **params) -> None:
        self.account.calls.append((operation, params))
        error = self.account.failures.pop(operation, None)
        if error is not None:
            logger.info(f"Mock injected failure for {operation}: {error}")
            raise error

    def _role(self, operation: str, role_name: str) -> Dict[str, Any]:
        role = self.account.roles.get(role_name)
        if role is None:
            raise NotFoundError(
                f"{operation} {role_name}: NoSuchEntity: The role with name {role_name} cannot be found.",
                operation=operation,
                code="NoSuchEntity",
            )
        return role

    @staticmethod
    def _is_aws_managed(policy_arn: str) -> bool:
        return ":iam::aws:policy/" in policy_arn

    def get_role(self, role_name: str) -> Dict[str, Any]:
        self._record("GetRole", RoleName=role_name)
        role = self._role("GetRole", role_name)
        return {
            "RoleName": role_name,
            "Arn": role["Arn"],
            "AssumeRolePolicyDocument": role["AssumeRolePolicyDocument"],
        }

    def create_role(self, role_name: str, trust_policy: str, description: str = "") -> str:
        self._record("CreateRole", RoleName=role_name, AssumeRolePolicyDocument=trust_policy)
        if role_name in self.account.roles:
            raise ResourceExistsConflict(
                f"CreateRole {role_name}: EntityAlreadyExists: Role with name {role_name} already exists.",
                operation="CreateRole",
                code="EntityAlreadyExists",
            )
        arn = role_arn(self.account_id, role_name, self.partition)
        self.account.roles[role_name] = {
            "Arn": arn,
            "AssumeRolePolicyDocument": json.loads(trust_policy),
            "Description": description,
            "InlinePolicies": {},
            "AttachedPolicies": {},  # policy arn -> policy name
        }
        logger.info(f"Mock created role: {role_name}")
        return arn

    def delete_role(self, role_name: str) -> None:
        self._record("DeleteRole", RoleName=role_name)
        role = self._role("DeleteRole", role_name)
        if role["InlinePolicies"] or role["AttachedPolicies"]:
            raise ConflictError(
                f"DeleteRole {role_name}: DeleteConflict: Cannot delete entity, must remove policies first.",
                operation="DeleteRole",
                code="DeleteConflict",
            )
        del self.account.roles[role_name]
        logger.info(f"Mock deleted role: {role_name}")

    def put_role_policy(self, role_name: str, policy_name: str, document: str) -> None:
        self._record("PutRolePolicy", RoleName=role_name, PolicyName=policy_name)
        role = self._role("PutRolePolicy", role_name)
        role["InlinePolicies"][policy_name] = json.loads(document)

    def delete_role_policy(self, role_name: str, policy_name: str) -> None:
        self._record("DeleteRolePolicy", RoleName=role_name, PolicyName=policy_name)
        role = self._role("DeleteRolePolicy", role_name)
        if policy_name not in role["InlinePolicies"]:
            raise NotFoundError(
                f"DeleteRolePolicy {role_name}/{policy_name}: NoSuchEntity",
                operation="DeleteRolePolicy",
                code="NoSuchEntity",
            )
        del role["InlinePolicies"][policy_name]

    def list_role_policies(self, role_name: str) -> List[str]:
        self._record("ListRolePolicies", RoleName=role_name)
        return sorted(self._role("ListRolePolicies", role_name)["InlinePolicies"])

    def list_attached_role_policies(self, role_name: str) -> List[AttachedPolicy]:
        self._record("ListAttachedRolePolicies", RoleName=role_name)
        attached = self._role("ListAttachedRolePolicies", role_name)["AttachedPolicies"]
        return [AttachedPolicy(policy_name=name, policy_arn=arn) for arn, name in attached.items()]

    def attach_role_policy(self, role_name: str, policy_arn: str) -> None:
        self._record("AttachRolePolicy", RoleName=role_name, PolicyArn=policy_arn)
        role = self._role("AttachRolePolicy", role_name)
        if self._is_aws_managed(policy_arn):
            policy_name = policy_arn.rsplit("/", 1)[-1]
        elif policy_arn in self.account.policies:
            policy_name = self.account.policies[policy_arn]["PolicyName"]
        else:
            raise NotFoundError(
                f"AttachRolePolicy {policy_arn}: NoSuchEntity: Policy {policy_arn} does not exist.",
                operation="AttachRolePolicy",
                code="NoSuchEntity",
            )
        role["AttachedPolicies"][policy_arn] = policy_name

    def detach_role_policy(self, role_name: str, policy_arn: str) -> None:
        self._record("DetachRolePolicy", RoleName=role_name, PolicyArn=policy_arn)
        role = self._role("DetachRolePolicy", role_name)
        if policy_arn not in role["AttachedPolicies"]:
            raise NotFoundError(
                f"DetachRolePolicy {policy_arn}: NoSuchEntity: Policy {policy_arn} was not found.",
                operation="DetachRolePolicy",
                code="NoSuchEntity",
            )
        del role["AttachedPolicies"][policy_arn]

    def get_policy(self, policy_arn: str) -> Dict[str, Any]:
        self._record("GetPolicy", PolicyArn=policy_arn)
        if self._is_aws_managed(policy_arn):
            return {"PolicyName": policy_arn.rsplit("/", 1)[-1], "Arn": policy_arn}
        policy = self.account.policies.get(policy_arn)
        if policy is None:
            raise NotFoundError(
                f"GetPolicy {policy_arn}: NoSuchEntity: Policy {policy_arn} was not found.",
                operation="GetPolicy",
                code="NoSuchEntity",
            )
        return {"PolicyName": policy["PolicyName"], "Arn": policy_arn}

    def create_policy(self, policy_name: str, document: str, description: str = "") -> str:
        self._record("CreatePolicy", PolicyName=policy_name)
        arn = f"arn:{self.partition}:iam::{self.account_id}:policy/{policy_name}"
        if arn in self.account.policies:
            raise ResourceExistsConflict(
                f"CreatePolicy {policy_name}: EntityAlreadyExists: A policy called {policy_name} already exists.",
                operation="CreatePolicy",
                code="EntityAlreadyExists",
            )
        self.account.policies[arn] = {
            "PolicyName": policy_name,
            "Document": json.loads(document),
            "Description": description,
        }
        return arn

    def delete_policy(self, policy_arn: str) -> None:
        self._record("DeletePolicy", PolicyArn=policy_arn)
        if policy_arn not in self.account.policies:
            raise NotFoundError(
                f"DeletePolicy {policy_arn}: NoSuchEntity",
                operation="DeletePolicy",
                code="NoSuchEntity",
            )
        if any(policy_arn in r["AttachedPolicies"] for r in self.account.roles.values()):
            raise ConflictError(
                f"DeletePolicy {policy_arn}: DeleteConflict: Cannot delete a policy attached to entities.",
                operation="DeletePolicy",
                code="DeleteConflict",
            )
        del self.account.policies[policy_arn]

    def head_bucket(self, bucket_name: str) -> None:
        self._record("HeadBucket", Bucket=bucket_name, Region=self.region)
        if bucket_name not in self.account.buckets:
            raise NotFoundError(f"HeadBucket {bucket_name}: 404: Not Found", operation="HeadBucket", code="404")


class MockSessionProvider:
    """SessionProvider stand-in handing out MockAWSConnectors."""

    def __init__(self, accounts: Optional[Dict[str, MockAccount]] = None, region: str = "us-east-1"):
        self.accounts: Dict[str, MockAccount] = accounts or {}
        self.region = region
        self.authentications: List[Tuple[str, Optional[str], Optional[str]]] = []
        self.auth_failures: Dict[Optional[str], AuthError] = {}  # region -> error

    def account(self, account_id: str) -> MockAccount:
        """Get (or create) the simulated account."""
        if account_id not in self.accounts:
            self.accounts[account_id] = MockAccount(account_id)
        return self.accounts[account_id]

    def authenticate(
        self, account_id: str, role_name: Optional[str] = None, region: Optional[str] = None
    ) -> MockAWSConnector:
        region = region or self.region
        self.authentications.append((account_id, role_name, region))
        error = self.auth_failures.get(region)
        if error is not None:
            raise error
        return MockAWSConnector(self.account(account_id), region=region)

    def account_in_organization(self, account_id: str) -> bool:
        return account_id in self.accounts

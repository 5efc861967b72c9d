"""
Base Connector Classes for the CSPM integration engine.

This module defines the cloud capability the reconciler depends on: the IAM and
S3 calls needed to manage one integration role. It has a real boto3
implementation and an in-memory backend for tests and dry runs.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..engine.policy_documents import partition_for_region
from ..models import AttachedPolicy

logger = logging.getLogger(__name__)

# IAM calls that change account state
MUTATING_OPERATIONS = frozenset(
    {
        "CreateRole",
        "DeleteRole",
        "PutRolePolicy",
        "DeleteRolePolicy",
        "AttachRolePolicy",
        "DetachRolePolicy",
        "CreatePolicy",
        "DeletePolicy",
    }
)


class BaseConnector(ABC):
    """
    Abstract base class for account connectors.

    A connector is bound to one AWS account and one region. All methods raise
    a subclass of ReconcileError on failure; nothing is returned as a status.
    """

    def __init__(self, account_id: str, region: Optional[str] = None, mock_mode: bool = False):
        """
        Initialize the connector.

        Args:
            account_id: AWS account the connector operates on
            region: Region the clients are created in
            mock_mode: If True, the connector is backed by in-memory state
        """
        self.account_id = account_id
        self.region = region
        self.partition = partition_for_region(region)
        self.mock_mode = mock_mode

        logger.info(
            f"Initialized {self.__class__.__name__} for account {account_id} "
            f"(region={region}, mock_mode={mock_mode})"
        )

    @abstractmethod
    def get_role(self, role_name: str) -> Dict[str, Any]:
        """
        Get a role.

        Args:
            role_name: Name of the role

        Returns:
            The Role structure (``Arn``, ``AssumeRolePolicyDocument``, ...)
        """

    @abstractmethod
    def create_role(self, role_name: str, trust_policy: str, description: str = "") -> str:
        """
        Create a role.

        Args:
            role_name: Name of the role
            trust_policy: Assume-role policy document as JSON
            description: Role description

        Returns:
            ARN of the new role
        """

    @abstractmethod
    def delete_role(self, role_name: str) -> None:
        """Delete a role that has no attached or inline policies left."""

    @abstractmethod
    def put_role_policy(self, role_name: str, policy_name: str, document: str) -> None:
        """Create or replace an inline policy on a role."""

    @abstractmethod
    def delete_role_policy(self, role_name: str, policy_name: str) -> None:
        """Delete an inline policy from a role."""

    @abstractmethod
    def list_role_policies(self, role_name: str) -> List[str]:
        """
        List the inline policy names of a role.

        Args:
            role_name: Name of the role

        Returns:
            Inline policy names
        """

    @abstractmethod
    def list_attached_role_policies(self, role_name: str) -> List[AttachedPolicy]:
        """
        List the managed policies attached to a role.

        Args:
            role_name: Name of the role

        Returns:
            Attached policies with name and ARN
        """

    @abstractmethod
    def attach_role_policy(self, role_name: str, policy_arn: str) -> None:
        """Attach a managed policy to a role."""

    @abstractmethod
    def detach_role_policy(self, role_name: str, policy_arn: str) -> None:
        """Detach a managed policy from a role."""

    @abstractmethod
    def get_policy(self, policy_arn: str) -> Dict[str, Any]:
        """Get a managed policy by ARN."""

    @abstractmethod
    def create_policy(self, policy_name: str, document: str, description: str = "") -> str:
        """
        Create a customer-managed policy.

        Args:
            policy_name: Name of the policy
            document: Policy document as JSON
            description: Policy description

        Returns:
            ARN of the new policy
        """

    @abstractmethod
    def delete_policy(self, policy_arn: str) -> None:
        """Delete a customer-managed policy that is no longer attached."""

    @abstractmethod
    def head_bucket(self, bucket_name: str) -> None:
        """Check that a bucket exists and is reachable with the current credentials."""

    def is_mock_mode(self) -> bool:
        """Check if this connector is running in mock mode."""
        return self.mock_mode

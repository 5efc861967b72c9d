"""
AWS Connector for the CSPM integration engine.

Wraps the boto3 IAM and S3 clients of one assumed-role session and translates
botocore failures into the engine's error taxonomy.
"""

import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore import xform_name
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from ..errors import AuthError, ProviderError, ReconcileError, TransientProviderError, error_class_for
from ..models import AttachedPolicy
from .base_connector import MUTATING_OPERATIONS, BaseConnector

logger = logging.getLogger(__name__)

CONNECTION_ERRORS = (EndpointConnectionError, ConnectionClosedError, ConnectTimeoutError, ReadTimeoutError)


def translate_client_error(error: ClientError, operation: str, resource: str = "") -> ReconcileError:
    """Convert a botocore ClientError into the matching engine error."""
    details = error.response.get("Error", {})
    code = str(details.get("Code", "Unknown"))
    message = details.get("Message") or str(error)
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

    error_class = error_class_for(code, status)
    target = f" {resource}" if resource else ""
    return error_class(f"{operation}{target}: {code}: {message}", operation=operation, code=code)


def translate_botocore_error(error: BotoCoreError, operation: str, resource: str = "") -> ReconcileError:
    """Convert a client-side botocore failure (credentials, network) into an engine error."""
    target = f" {resource}" if resource else ""
    if isinstance(error, NoCredentialsError):
        return AuthError(f"{operation}{target}: {error}", operation=operation)
    if isinstance(error, CONNECTION_ERRORS):
        return TransientProviderError(f"{operation}{target}: {error}", operation=operation)
    return ProviderError(f"{operation}{target}: {error}", operation=operation)


class AWSConnector(BaseConnector):
    """IAM and S3 operations against one AWS account."""

    def __init__(self, session: boto3.Session, account_id: str, region: Optional[str] = None):
        super().__init__(account_id, region or session.region_name)
        self.session = session
        self._clients: Dict[str, Any] = {}

    def client(self, service: str):
        """Get (and cache) a boto3 client for ``service`` in the connector's region."""
        if service not in self._clients:
            self._clients[service] = self.session.client(service, region_name=self.region)
        return self._clients[service]

    def _call(self, service: str, operation: str, resource: str = "", **kwargs) -> Dict[str, Any]:
        method = getattr(self.client(service), xform_name(operation))
        if operation in MUTATING_OPERATIONS:
            logger.info(f"{operation} {resource} in account {self.account_id}")
        else:
            logger.debug(f"{operation} {resource} in account {self.account_id}")

        try:
            return method(**kwargs)
        except ClientError as e:
            raise translate_client_error(e, operation, resource) from e
        except BotoCoreError as e:
            raise translate_botocore_error(e, operation, resource) from e

    def _paginate(self, service: str, operation: str, result_key: str, resource: str = "", **kwargs) -> List[Any]:
        paginator = self.client(service).get_paginator(xform_name(operation))
        logger.debug(f"{operation} {resource} in account {self.account_id}")

        items: List[Any] = []
        try:
            for page in paginator.paginate(**kwargs):
                items.extend(page.get(result_key, []))
        except ClientError as e:
            raise translate_client_error(e, operation, resource) from e
        except BotoCoreError as e:
            raise translate_botocore_error(e, operation, resource) from e
        return items

    def get_role(self, role_name: str) -> Dict[str, Any]:
        return self._call("iam", "GetRole", role_name, RoleName=role_name)["Role"]

    def create_role(self, role_name: str, trust_policy: str, description: str = "") -> str:
        response = self._call(
            "iam",
            "CreateRole",
            role_name,
            RoleName=role_name,
            AssumeRolePolicyDocument=trust_policy,
            Description=description,
        )
        role = response.get("Role") or {}
        if not role.get("Arn"):
            raise ProviderError(f"CreateRole {role_name}: response has no role ARN", operation="CreateRole")
        return role["Arn"]

    def delete_role(self, role_name: str) -> None:
        self._call("iam", "DeleteRole", role_name, RoleName=role_name)

    def put_role_policy(self, role_name: str, policy_name: str, document: str) -> None:
        self._call(
            "iam",
            "PutRolePolicy",
            f"{role_name}/{policy_name}",
            RoleName=role_name,
            PolicyName=policy_name,
            PolicyDocument=document,
        )

    def delete_role_policy(self, role_name: str, policy_name: str) -> None:
        self._call(
            "iam",
            "DeleteRolePolicy",
            f"{role_name}/{policy_name}",
            RoleName=role_name,
            PolicyName=policy_name,
        )

    def list_role_policies(self, role_name: str) -> List[str]:
        return self._paginate("iam", "ListRolePolicies", "PolicyNames", role_name, RoleName=role_name)

    def list_attached_role_policies(self, role_name: str) -> List[AttachedPolicy]:
        attached = self._paginate(
            "iam", "ListAttachedRolePolicies", "AttachedPolicies", role_name, RoleName=role_name
        )
        return [AttachedPolicy(policy_name=p["PolicyName"], policy_arn=p["PolicyArn"]) for p in attached]

    def attach_role_policy(self, role_name: str, policy_arn: str) -> None:
        self._call("iam", "AttachRolePolicy", f"{role_name} <- {policy_arn}", RoleName=role_name, PolicyArn=policy_arn)

    def detach_role_policy(self, role_name: str, policy_arn: str) -> None:
        self._call("iam", "DetachRolePolicy", f"{role_name} -> {policy_arn}", RoleName=role_name, PolicyArn=policy_arn)

    def get_policy(self, policy_arn: str) -> Dict[str, Any]:
        return self._call("iam", "GetPolicy", policy_arn, PolicyArn=policy_arn)["Policy"]

    def create_policy(self, policy_name: str, document: str, description: str = "") -> str:
        response = self._call(
            "iam",
            "CreatePolicy",
            policy_name,
            PolicyName=policy_name,
            PolicyDocument=document,
            Description=description,
        )
        return response["Policy"]["Arn"]

    def delete_policy(self, policy_arn: str) -> None:
        self._call("iam", "DeletePolicy", policy_arn, PolicyArn=policy_arn)

    def head_bucket(self, bucket_name: str) -> None:
        self._call("s3", "HeadBucket", bucket_name, Bucket=bucket_name)

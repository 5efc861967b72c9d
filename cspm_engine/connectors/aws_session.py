"""
AWS session provider for the CSPM integration engine.

Turns a target account ID into an authenticated AWSConnector by assuming a
role in that account. Temporary credentials are cached per connector and
refreshed automatically before they expire.
"""

import logging
from typing import Any, Dict, Optional

import boto3
from botocore.credentials import RefreshableCredentials
from botocore.exceptions import BotoCoreError, ClientError, ProfileNotFound
from botocore.session import get_session

from ..engine.policy_documents import partition_for_region, role_arn
from ..errors import AuthError
from .aws_connector import AWSConnector, translate_botocore_error, translate_client_error

logger = logging.getLogger(__name__)

DEFAULT_ORG_ACCESS_ROLE_NAME = "OrganizationAccountAccessRole"
DEFAULT_REGION = "us-east-1"
DEFAULT_SESSION_DURATION = 60 * 60
DEFAULT_SESSION_NAME = "cspm-integration-session"


class SessionProvider:
    """Assumes a role in a target account and hands out connectors for it."""

    def __init__(
        self,
        profile_name: Optional[str] = None,
        region: str = DEFAULT_REGION,
        org_access_role_name: str = DEFAULT_ORG_ACCESS_ROLE_NAME,
        session_duration_seconds: int = DEFAULT_SESSION_DURATION,
        session_name: str = DEFAULT_SESSION_NAME,
        source_session: Optional[boto3.Session] = None,
    ):
        """
        Initialize the session provider.

        Args:
            profile_name: Shared config profile for the source credentials;
                          the default credential chain is used when None
            region: Region used when ``authenticate`` is not given one
            org_access_role_name: Role assumed in target accounts unless overridden
            session_duration_seconds: Lifetime of each assumed-role session
            session_name: RoleSessionName recorded in CloudTrail
            source_session: Pre-built boto3 session for the source credentials
        """
        self.profile_name = profile_name
        self.region = region
        self.org_access_role_name = org_access_role_name
        self.session_duration_seconds = session_duration_seconds
        self.session_name = session_name
        self._source_session = source_session

    @classmethod
    def from_settings(cls, settings: Any) -> "SessionProvider":
        """Build a provider from EngineSettings."""
        return cls(
            profile_name=settings.profile_name,
            region=settings.region,
            org_access_role_name=settings.org_access_role_name,
            session_duration_seconds=settings.session_duration_seconds,
            session_name=settings.session_name,
        )

    def source_session(self, region: Optional[str] = None) -> boto3.Session:
        """Session holding the caller's own credentials."""
        if self._source_session is not None:
            return self._source_session
        try:
            return boto3.Session(profile_name=self.profile_name, region_name=region or self.region)
        except ProfileNotFound as e:
            raise AuthError(f"AWS profile {self.profile_name!r} not found", operation="LoadProfile") from e

    def role_arn(self, account_id: str, role_name: Optional[str] = None, region: Optional[str] = None) -> str:
        """ARN of the role assumed in ``account_id``."""
        return role_arn(
            account_id,
            role_name or self.org_access_role_name,
            partition_for_region(region or self.region),
        )

    def authenticate(
        self, account_id: str, role_name: Optional[str] = None, region: Optional[str] = None
    ) -> AWSConnector:
        """
        Get a connector for ``account_id`` backed by assumed-role credentials.

        Args:
            account_id: Target AWS account
            role_name: Role to assume instead of the organization access role
            region: Region for the connector's clients

        Returns:
            AWSConnector whose credentials refresh themselves

        Raises:
            AuthError: if source credentials cannot be resolved or the role
                       cannot be assumed
        """
        region = region or self.region
        assume_arn = self.role_arn(account_id, role_name, region)
        sts_client = self.source_session(region).client("sts", region_name=region)

        def refresh() -> Dict[str, str]:
            return self._assume_role_credentials(sts_client, assume_arn)

        credentials = RefreshableCredentials.create_from_metadata(
            metadata=refresh(),
            refresh_using=refresh,
            method="sts-assume-role",
        )
        botocore_session = get_session()
        botocore_session._credentials = credentials
        session = boto3.Session(botocore_session=botocore_session, region_name=region)

        logger.info(f"Authenticated to account {account_id} as {assume_arn} (region={region})")
        return AWSConnector(session, account_id=account_id, region=region)

    def _assume_role_credentials(self, sts_client: Any, assume_arn: str) -> Dict[str, str]:
        """Assume ``assume_arn`` and return credentials in RefreshableCredentials metadata form."""
        try:
            response = sts_client.assume_role(
                RoleArn=assume_arn,
                RoleSessionName=self.session_name,
                DurationSeconds=self.session_duration_seconds,
            )["Credentials"]
        except ClientError as e:
            cause = translate_client_error(e, "AssumeRole", assume_arn)
            raise AuthError(str(cause), operation="AssumeRole", code=cause.code) from e
        except BotoCoreError as e:
            cause = translate_botocore_error(e, "AssumeRole", assume_arn)
            raise AuthError(str(cause), operation="AssumeRole") from e

        logger.debug(f"Credentials for {assume_arn} expire at {response['Expiration']}")
        return {
            "access_key": response["AccessKeyId"],
            "secret_key": response["SecretAccessKey"],
            "token": response["SessionToken"],
            "expiry_time": response["Expiration"].isoformat(),
        }

    def account_in_organization(self, account_id: str) -> bool:
        """
        Check whether ``account_id`` is a member of the caller's organization.

        Uses the source credentials, which must belong to the management
        account (or a delegated administrator).
        """
        client = self.source_session().client("organizations")
        try:
            for page in client.get_paginator("list_accounts").paginate():
                if any(account["Id"] == account_id for account in page.get("Accounts", [])):
                    return True
        except ClientError as e:
            raise translate_client_error(e, "ListAccounts") from e
        except BotoCoreError as e:
            raise translate_botocore_error(e, "ListAccounts") from e
        return False

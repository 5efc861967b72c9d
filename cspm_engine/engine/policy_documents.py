"""
IAM policy documents for the integration role.

Documents are built as typed models and serialized with json.dumps, so account
IDs, external IDs and bucket names are always escaped and two documents can be
compared structurally.
"""

import json
from typing import Any, Dict, List, Optional, Union
from urllib.parse import unquote

from pydantic import BaseModel, ConfigDict, Field

POLICY_VERSION = "2012-10-17"

READ_ONLY_POLICY_NAME = "UptycsReadOnlyPolicy"
BUCKET_POLICY_SUFFIX = "-CloudTrailBucketPolicy"
ROLE_DESCRIPTION = "Uptycs integration role"
BUCKET_POLICY_DESCRIPTION = "Read access to CloudTrail logs for the Uptycs integration role"

VIEW_ONLY_ACCESS = "ViewOnlyAccess"
SECURITY_AUDIT = "SecurityAudit"

READ_ONLY_ACTIONS = (
    "apigateway:GET",
    "codecommit:GetCommit",
    "codecommit:GetRepository",
    "codecommit:GetBranch",
    "codepipeline:ListTagsForResource",
    "codepipeline:GetPipeline",
    "ds:ListTagsForResource",
    "eks:ListNodegroups",
    "eks:DescribeFargateProfile",
    "eks:ListTagsForResource",
    "eks:ListAddons",
    "eks:DescribeAddon",
    "eks:ListFargateProfiles",
    "eks:DescribeNodegroup",
    "eks:DescribeIdentityProviderConfig",
    "eks:ListUpdates",
    "eks:DescribeUpdate",
    "eks:DescribeCluster",
    "eks:ListClusters",
    "eks:ListIdentityProviderConfigs",
    "elasticache:ListTagsForResource",
    "es:ListTags",
    "glacier:GetDataRetrievalPolicy",
    "glacier:ListJobs",
    "glacier:GetVaultAccessPolicy",
    "glacier:ListTagsForVault",
    "glacier:DescribeVault",
    "glacier:GetJobOutput",
    "glacier:GetVaultLock",
    "glacier:ListVaults",
    "glacier:GetVaultNotifications",
    "glacier:DescribeJob",
    "kinesis:DescribeStream",
    "logs:FilterLogEvents",
    "ram:ListResources",
    "ram:GetResourceShares",
    "secretsmanager:DescribeSecret",
    "servicecatalog:SearchProductsAsAdmin",
    "servicecatalog:DescribeProductAsAdmin",
    "servicecatalog:DescribePortfolio",
    "servicecatalog:DescribeServiceAction",
    "servicecatalog:DescribeProvisioningArtifact",
    "sns:ListTagsForResource",
    "sns:ListSubscriptionsByTopic",
    "sns:GetTopicAttributes",
    "sns:ListTopics",
    "sns:GetSubscriptionAttributes",
    "sqs:ListQueues",
    "sqs:GetQueueAttributes",
    "sqs:ListQueueTags",
    "ssm:ListCommandInvocations",
)


class PolicyStatement(BaseModel):
    """A single IAM policy statement."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    effect: str = Field("Allow", alias="Effect")
    principal: Optional[Dict[str, Any]] = Field(None, alias="Principal")
    action: Union[str, List[str]] = Field(..., alias="Action")
    resource: Optional[Union[str, List[str]]] = Field(None, alias="Resource")
    condition: Optional[Dict[str, Dict[str, Any]]] = Field(None, alias="Condition")


class PolicyDocument(BaseModel):
    """An IAM policy document."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    version: str = Field(POLICY_VERSION, alias="Version")
    statement: List[PolicyStatement] = Field(..., alias="Statement")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self, indent: Optional[int] = None) -> str:
        """Serialize in the key order IAM shows the document back."""
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def parse(cls, document: Union[str, Dict[str, Any]]) -> "PolicyDocument":
        """
        Parse a document returned by IAM or supplied by a caller.

        GetRole returns the trust policy URL-encoded when the raw API is used;
        boto3 usually decodes it to a dict already.
        """
        if isinstance(document, str):
            text = document if document.lstrip().startswith("{") else unquote(document)
            document = json.loads(text)
        statements = document.get("Statement", [])
        if isinstance(statements, dict):
            statements = [statements]
        return cls(Version=document.get("Version", POLICY_VERSION), Statement=statements)


def partition_for_region(region: Optional[str]) -> str:
    """Return the AWS partition a region belongs to."""
    if region and region.startswith("cn-"):
        return "aws-cn"
    if region and region.startswith("us-gov-"):
        return "aws-us-gov"
    return "aws"


def trust_policy(upt_account_id: str, external_id: str, partition: str = "aws") -> PolicyDocument:
    """Allow the platform account to assume the role when it presents the external ID."""
    return PolicyDocument(
        Statement=[
            PolicyStatement(
                Effect="Allow",
                Principal={"AWS": f"arn:{partition}:iam::{upt_account_id}:root"},
                Action="sts:AssumeRole",
                Condition={"StringEquals": {"sts:ExternalId": external_id}},
            )
        ]
    )


def read_only_policy() -> PolicyDocument:
    """The built-in inline read-only policy."""
    return PolicyDocument(
        Statement=[PolicyStatement(Effect="Allow", Action=list(READ_ONLY_ACTIONS), Resource="*")]
    )


def bucket_read_policy(bucket_name: str, partition: str = "aws") -> PolicyDocument:
    """Allow reading every object in the CloudTrail bucket."""
    return PolicyDocument(
        Statement=[
            PolicyStatement(
                Effect="Allow",
                Action=["s3:GetObject"],
                Resource=[f"arn:{partition}:s3:::{bucket_name}/*"],
            )
        ]
    )


def inline_policy_document(override: Optional[str] = None) -> str:
    """Return the inline policy JSON: the caller's override or the built-in document."""
    if override:
        return override
    return read_only_policy().to_json(indent=4)


def managed_policy_arn(name: str, partition: str = "aws") -> str:
    """ARN of an AWS-managed policy used by the integration."""
    if name == VIEW_ONLY_ACCESS:
        return f"arn:{partition}:iam::aws:policy/job-function/{VIEW_ONLY_ACCESS}"
    return f"arn:{partition}:iam::aws:policy/{name}"


def bucket_policy_name(integration_name: str) -> str:
    return f"{integration_name}{BUCKET_POLICY_SUFFIX}"


def bucket_policy_arn(account_id: str, integration_name: str, partition: str = "aws") -> str:
    return f"arn:{partition}:iam::{account_id}:policy/{bucket_policy_name(integration_name)}"


def is_bucket_policy(policy_name: str) -> bool:
    return policy_name.endswith(BUCKET_POLICY_SUFFIX)


def role_arn(account_id: str, role_name: str, partition: str = "aws") -> str:
    return f"arn:{partition}:iam::{account_id}:role/{role_name}"

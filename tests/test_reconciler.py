"""
Tests for Reconciler.converge, describe and replace.

These run against the in-memory account so that every cloud call can be
counted and any of them can be made to fail.
"""

import json

import pytest

from cspm_engine.audit import AuditLogger
from cspm_engine.engine import Reconciler
from cspm_engine.engine.policy_documents import READ_ONLY_POLICY_NAME, read_only_policy, trust_policy
from cspm_engine.errors import (
    AuthError,
    NotFoundError,
    PermissionDeniedError,
    ResourceExistsConflict,
    TransientProviderError,
    ValidationError,
)
from cspm_engine.models import ReconcileOperation

from .conftest import (
    ACCOUNT_ID,
    BUCKET_NAME,
    BUCKET_POLICY_ARN,
    BUCKET_REGION,
    EXTERNAL_ID,
    INTEGRATION_NAME,
    SECURITY_AUDIT_ARN,
    UPT_ACCOUNT_ID,
    VIEW_ONLY_ARN,
)

BUCKET_OPERATIONS = {"HeadBucket", "GetPolicy", "CreatePolicy"}


class TestConverge:
    """Test cases for converging a new or existing integration."""

    def test_creates_integration_from_scratch(self, reconciler, account, provider, make_config):
        """Test converge with no existing role and no bucket."""
        result = reconciler.converge(make_config())

        assert result.role_arn == "arn:aws:iam::123456789012:role/uptcloud"
        assert result.role_created is True
        assert result.operation == ReconcileOperation.CONVERGE

        role = account.roles[INTEGRATION_NAME]
        assert role["AssumeRolePolicyDocument"] == trust_policy(UPT_ACCOUNT_ID, EXTERNAL_ID).to_dict()
        assert role["InlinePolicies"][READ_ONLY_POLICY_NAME] == read_only_policy().to_dict()
        assert set(role["AttachedPolicies"]) == {VIEW_ONLY_ARN, SECURITY_AUDIT_ARN}

        assert [op for op, _ in account.mutating_calls()] == [
            "CreateRole",
            "PutRolePolicy",
            "AttachRolePolicy",
            "AttachRolePolicy",
        ]

    def test_no_bucket_calls_without_bucket(self, reconciler, account, provider, make_config):
        """Test that no bucket-related calls or logins happen without a bucket name."""
        reconciler.converge(make_config())

        assert not BUCKET_OPERATIONS & set(account.operations())
        assert len(provider.authentications) == 1
        assert account.policies == {}

    def test_second_converge_is_a_no_op(self, reconciler, account, make_config):
        """Test that converging twice issues no mutating calls the second time."""
        config = make_config(bucket_name=BUCKET_NAME, bucket_region=BUCKET_REGION)
        account.buckets.add(BUCKET_NAME)

        first = reconciler.converge(config)
        account.reset_calls()
        second = reconciler.converge(config)

        assert account.mutating_calls() == []
        assert second.role_arn == first.role_arn
        assert second.role_created is False
        assert second.changed is False
        assert first.changed is True

    def test_existing_view_only_attachment_is_kept(self, reconciler, account, make_config):
        """Test that an existing ViewOnlyAccess attachment is not re-attached."""
        connector = reconciler.connector
        connector.create_role(INTEGRATION_NAME, trust_policy(UPT_ACCOUNT_ID, EXTERNAL_ID).to_json())
        connector.attach_role_policy(INTEGRATION_NAME, VIEW_ONLY_ARN)
        account.reset_calls()

        result = reconciler.converge(make_config())

        attached = [params["PolicyArn"] for op, params in account.calls if op == "AttachRolePolicy"]
        assert attached == [SECURITY_AUDIT_ARN]
        assert "CreateRole" not in account.operations()
        assert result.role_created is False
        assert set(account.roles[INTEGRATION_NAME]["AttachedPolicies"]) == {VIEW_ONLY_ARN, SECURITY_AUDIT_ARN}

    def test_existing_inline_policy_is_not_rewritten(self, reconciler, account, make_config):
        """Test that the inline policy is only written when it is missing."""
        connector = reconciler.connector
        connector.create_role(INTEGRATION_NAME, trust_policy(UPT_ACCOUNT_ID, EXTERNAL_ID).to_json())
        connector.put_role_policy(INTEGRATION_NAME, READ_ONLY_POLICY_NAME, '{"Statement": []}')
        account.reset_calls()

        reconciler.converge(make_config())

        assert "PutRolePolicy" not in account.operations()
        assert account.roles[INTEGRATION_NAME]["InlinePolicies"][READ_ONLY_POLICY_NAME] == {"Statement": []}

    def test_policy_document_override(self, reconciler, account, make_config):
        """Test that a caller-supplied inline document replaces the default."""
        override = {
            "Version": "2012-10-17",
            "Statement": [{"Effect": "Allow", "Action": ["ec2:Describe*"], "Resource": "*"}],
        }
        reconciler.converge(make_config(policy_document=json.dumps(override)))

        assert account.roles[INTEGRATION_NAME]["InlinePolicies"][READ_ONLY_POLICY_NAME] == override

    def test_trust_policy_is_never_rewritten(self, reconciler, account, make_config):
        """Test that a changed external ID is flagged as drift but not applied."""
        reconciler.converge(make_config())
        account.reset_calls()

        result = reconciler.converge(make_config(external_id="rotated-external-id"))

        assert result.trust_policy_drift is True
        assert account.mutating_calls() == []
        document = account.roles[INTEGRATION_NAME]["AssumeRolePolicyDocument"]
        assert document["Statement"][0]["Condition"]["StringEquals"]["sts:ExternalId"] == EXTERNAL_ID

    def test_no_drift_for_matching_trust_policy(self, reconciler, make_config):
        """Test that an unchanged request is not reported as drift."""
        reconciler.converge(make_config())
        assert reconciler.converge(make_config()).trust_policy_drift is False

    def test_actions_are_recorded(self, reconciler, make_config):
        """Test the per-call action log of a converge."""
        result = reconciler.converge(make_config())

        operations = [a["operation"] for a in result.actions_taken]
        assert operations[:4] == ["GetRole", "CreateRole", "ListAttachedRolePolicies", "ListRolePolicies"]
        assert all(a["success"] for a in result.actions_taken)


class TestConvergeWithBucket:
    """Test cases for the optional CloudTrail bucket policy."""

    @pytest.fixture
    def bucket_config(self, make_config, account):
        account.buckets.add(BUCKET_NAME)
        return make_config(bucket_name=BUCKET_NAME, bucket_region=BUCKET_REGION)

    def test_creates_and_attaches_bucket_policy(self, reconciler, account, provider, bucket_config):
        """Test the bucket policy is created and attached."""
        reconciler.converge(bucket_config)

        assert BUCKET_POLICY_ARN in account.policies
        assert account.policies[BUCKET_POLICY_ARN]["Document"]["Statement"][0]["Resource"] == [
            "arn:aws:s3:::uptycs-test-bucket/*"
        ]
        assert BUCKET_POLICY_ARN in account.roles[INTEGRATION_NAME]["AttachedPolicies"]
        assert provider.authentications[-1] == (ACCOUNT_ID, None, BUCKET_REGION)

    def test_bucket_checked_in_bucket_region(self, reconciler, account, bucket_config):
        """Test that the bucket probe runs on the bucket-region client."""
        reconciler.converge(bucket_config)

        head = [params for op, params in account.calls if op == "HeadBucket"]
        assert head == [{"Bucket": BUCKET_NAME, "Region": BUCKET_REGION}]

    def test_existing_bucket_policy_is_reused(self, reconciler, account, bucket_config):
        """Test that an existing but detached bucket policy is attached, not recreated."""
        reconciler.connector.create_policy(f"{INTEGRATION_NAME}-CloudTrailBucketPolicy", '{"Statement": []}')
        account.reset_calls()

        reconciler.converge(bucket_config)

        assert "CreatePolicy" not in account.operations()
        assert BUCKET_POLICY_ARN in account.roles[INTEGRATION_NAME]["AttachedPolicies"]

    def test_attached_bucket_policy_skips_lookup(self, reconciler, account, bucket_config):
        """Test that an attached bucket policy needs no GetPolicy call."""
        reconciler.converge(bucket_config)
        account.reset_calls()

        reconciler.converge(bucket_config)

        assert "GetPolicy" not in account.operations()
        assert "HeadBucket" in account.operations()

    def test_missing_bucket_aborts_and_rolls_back(self, reconciler, account, make_config):
        """Test that an unreachable bucket fails the converge and removes the role."""
        config = make_config(bucket_name="missing-bucket", bucket_region=BUCKET_REGION)

        with pytest.raises(NotFoundError) as exc_info:
            reconciler.converge(config)

        assert exc_info.value.operation == "HeadBucket"
        assert account.roles == {}
        assert account.policies == {}

    def test_bucket_region_login_failure(self, reconciler, account, provider, bucket_config):
        """Test that failing to authenticate in the bucket region fails the converge."""
        provider.auth_failures[BUCKET_REGION] = AuthError("AssumeRole: AccessDenied", operation="AssumeRole")

        with pytest.raises(AuthError):
            reconciler.converge(bucket_config)

        assert account.roles == {}

    def test_bucket_needs_session_provider(self, account, bucket_config, provider):
        """Test that bucket reconciliation without a session provider is a validation error."""
        reconciler = Reconciler(provider.authenticate(ACCOUNT_ID))

        with pytest.raises(ValidationError):
            reconciler.converge(bucket_config)


class TestConvergeFailures:
    """Test cases for failure handling and compensation."""

    def test_failure_after_inline_policy_rolls_back(self, reconciler, account, make_config):
        """Test that a failed attach removes the inline policy and the role."""
        account.fail_on("AttachRolePolicy", PermissionDeniedError("AttachRolePolicy: AccessDenied", operation="AttachRolePolicy"))

        with pytest.raises(PermissionDeniedError):
            reconciler.converge(make_config())

        assert account.roles == {}
        assert "DeleteRolePolicy" in account.operations()
        assert account.operations()[-1] == "DeleteRole"

    def test_update_failure_is_not_rolled_back(self, reconciler, account, make_config):
        """Test that an update leaves partial state in place."""
        account.fail_on("AttachRolePolicy", PermissionDeniedError("AttachRolePolicy: AccessDenied", operation="AttachRolePolicy"))

        with pytest.raises(PermissionDeniedError):
            reconciler.converge(make_config(is_update=True))

        role = account.roles[INTEGRATION_NAME]
        assert READ_ONLY_POLICY_NAME in role["InlinePolicies"]
        assert "DeleteRole" not in account.operations()

    def test_error_is_wrapped_with_operation_and_integration(self, reconciler, account, make_config):
        """Test that the raised error names the failing call and keeps its cause."""
        original = TransientProviderError("AttachRolePolicy: Throttling: Rate exceeded", operation="AttachRolePolicy", code="Throttling")
        account.fail_on("AttachRolePolicy", original)

        with pytest.raises(TransientProviderError) as exc_info:
            reconciler.converge(make_config())

        error = exc_info.value
        assert error is not original
        assert error.__cause__ is original
        assert error.operation == "AttachRolePolicy"
        assert error.integration_name == INTEGRATION_NAME
        assert error.code == "Throttling"
        assert "AttachRolePolicy" in str(error)
        assert INTEGRATION_NAME in str(error)

    def test_rollback_errors_are_not_merged(self, reconciler, account, make_config):
        """Test that a failing rollback does not replace the original error."""
        account.fail_on("AttachRolePolicy", PermissionDeniedError("AttachRolePolicy: AccessDenied", operation="AttachRolePolicy"))
        account.fail_on("DeleteRole", TransientProviderError("DeleteRole: ServiceFailure", operation="DeleteRole"))

        with pytest.raises(PermissionDeniedError):
            reconciler.converge(make_config())

        assert INTEGRATION_NAME in account.roles

    def test_concurrent_creation_surfaces_conflict(self, reconciler, account, make_config):
        """Test that losing a creation race surfaces a ResourceExistsConflict."""
        account.fail_on(
            "CreateRole",
            ResourceExistsConflict("CreateRole uptcloud: EntityAlreadyExists", operation="CreateRole", code="EntityAlreadyExists"),
        )

        with pytest.raises(ResourceExistsConflict):
            reconciler.converge(make_config())

    def test_losing_creation_race_keeps_winners_role(self, reconciler, account, make_config):
        """Test that a converge losing the CreateRole race leaves the other caller's role alone."""
        winner = reconciler.converge(make_config())
        account.fail_on(
            "GetRole",
            NotFoundError("GetRole uptcloud: NoSuchEntity", operation="GetRole", code="NoSuchEntity"),
        )
        account.reset_calls()

        with pytest.raises(ResourceExistsConflict) as exc_info:
            reconciler.converge(make_config())

        assert exc_info.value.operation == "CreateRole"
        assert [op for op, _ in account.mutating_calls()] == ["CreateRole"]
        role = account.roles[INTEGRATION_NAME]
        assert role["Arn"] == winner.role_arn
        assert READ_ONLY_POLICY_NAME in role["InlinePolicies"]
        assert set(role["AttachedPolicies"]) == {VIEW_ONLY_ARN, SECURITY_AUDIT_ARN}

    def test_config_for_other_account_is_rejected(self, reconciler, account, make_config):
        """Test that a config targeting another account fails before any call."""
        with pytest.raises(ValidationError) as exc_info:
            reconciler.converge(make_config(account_id="210987654321"))

        assert exc_info.value.integration_name == INTEGRATION_NAME
        assert account.calls == []

    def test_replace_for_other_account_is_rejected(self, reconciler, account, make_config):
        """Test that replace refuses a config for another account without tearing anything down."""
        reconciler.converge(make_config())
        account.reset_calls()

        with pytest.raises(ValidationError):
            reconciler.replace(make_config(account_id="210987654321"))

        assert account.calls == []
        assert INTEGRATION_NAME in account.roles

    def test_retry_after_transient_failure_completes(self, reconciler, account, make_config):
        """Test that an update retried after a failure only does the remaining work."""
        account.fail_on("AttachRolePolicy", TransientProviderError("AttachRolePolicy: Throttling", operation="AttachRolePolicy"))
        with pytest.raises(TransientProviderError):
            reconciler.converge(make_config(is_update=True))
        account.reset_calls()

        result = reconciler.converge(make_config(is_update=True))

        assert [op for op, _ in account.mutating_calls()] == ["AttachRolePolicy", "AttachRolePolicy"]
        assert result.role_arn == "arn:aws:iam::123456789012:role/uptcloud"


class TestDescribeAndReplace:
    """Test cases for describe and replace."""

    def test_describe_existing_role(self, reconciler, make_config):
        """Test that describe returns the role ARN."""
        reconciler.converge(make_config())
        assert reconciler.describe(INTEGRATION_NAME) == "arn:aws:iam::123456789012:role/uptcloud"

    def test_describe_missing_role(self, reconciler):
        """Test that describe raises NotFoundError for a missing role."""
        with pytest.raises(NotFoundError) as exc_info:
            reconciler.describe(INTEGRATION_NAME)
        assert exc_info.value.integration_name == INTEGRATION_NAME

    def test_replace_recreates_role(self, reconciler, account, make_config):
        """Test that replace tears down and converges again with the new trust policy."""
        reconciler.converge(make_config())
        account.reset_calls()

        result = reconciler.replace(make_config(external_id="rotated-external-id"))

        assert result.operation == ReconcileOperation.REPLACE
        assert result.role_created is True
        assert account.operations().index("DeleteRole") < account.operations().index("CreateRole")
        document = account.roles[INTEGRATION_NAME]["AssumeRolePolicyDocument"]
        assert document["Statement"][0]["Condition"]["StringEquals"]["sts:ExternalId"] == "rotated-external-id"

    def test_replace_missing_role_just_converges(self, reconciler, account, make_config):
        """Test that replace on a missing role skips the teardown."""
        reconciler.replace(make_config())

        assert "DeleteRole" not in account.operations()
        assert INTEGRATION_NAME in account.roles

    def test_replace_failure_keeps_partial_state(self, reconciler, account, make_config):
        """Test that a failing replace does not roll back the recreated role."""
        reconciler.converge(make_config())
        account.fail_on("PutRolePolicy", PermissionDeniedError("PutRolePolicy: AccessDenied", operation="PutRolePolicy"))

        with pytest.raises(PermissionDeniedError):
            reconciler.replace(make_config())

        assert INTEGRATION_NAME in account.roles
        assert account.roles[INTEGRATION_NAME]["InlinePolicies"] == {}


class TestAuditTrail:
    """Test cases for audit records written by the reconciler."""

    def test_success_and_failure_are_audited(self, provider, account, make_config, tmp_path):
        """Test that converge writes one record per run."""
        audit_logger = AuditLogger(tmp_path)
        reconciler = Reconciler.for_account(provider, ACCOUNT_ID, audit_logger=audit_logger)

        reconciler.converge(make_config())
        account.fail_on("DetachRolePolicy", PermissionDeniedError("DetachRolePolicy: AccessDenied", operation="DetachRolePolicy"))
        with pytest.raises(PermissionDeniedError):
            reconciler.teardown(INTEGRATION_NAME)

        records = audit_logger.get_events(integration_name=INTEGRATION_NAME)
        assert [r.operation for r in records] == [ReconcileOperation.TEARDOWN, ReconcileOperation.CONVERGE]
        assert records[0].success is False
        assert records[0].error_type == "PermissionDeniedError"
        assert records[1].success is True
        assert records[1].role_arn == "arn:aws:iam::123456789012:role/uptcloud"

    def test_rollback_is_audited(self, provider, account, make_config, tmp_path):
        """Test that a compensated converge is recorded as rolled back."""
        audit_logger = AuditLogger(tmp_path)
        reconciler = Reconciler.for_account(provider, ACCOUNT_ID, audit_logger=audit_logger)
        account.fail_on("AttachRolePolicy", PermissionDeniedError("AttachRolePolicy: AccessDenied", operation="AttachRolePolicy"))

        with pytest.raises(PermissionDeniedError):
            reconciler.converge(make_config())

        record = audit_logger.get_events()[0]
        assert record.success is False
        assert record.rolled_back is True
        assert any(a["operation"] == "DeleteRole" for a in record.actions)

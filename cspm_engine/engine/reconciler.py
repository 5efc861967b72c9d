"""
Reconciler for the CSPM integration engine.

Converges the live IAM state of an account towards the desired integration
(role, inline read-only policy, managed policy attachments and an optional
CloudTrail bucket policy) and tears it down again.

Converge reads before it writes, so repeating it against a converged account
issues no mutating calls. A failed converge is compensated by a best-effort
teardown unless the caller is replacing the integration. Teardown itself is
not compensated: it stops at the first failing call.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from ..errors import NotFoundError, ReconcileError, ResourceExistsConflict, ValidationError
from ..models import AuditRecord, IntegrationConfig, ReconcileOperation, ReconciliationResult
from .policy_documents import (
    BUCKET_POLICY_DESCRIPTION,
    READ_ONLY_POLICY_NAME,
    ROLE_DESCRIPTION,
    SECURITY_AUDIT,
    VIEW_ONLY_ACCESS,
    PolicyDocument,
    bucket_policy_arn,
    bucket_policy_name,
    bucket_read_policy,
    inline_policy_document,
    is_bucket_policy,
    managed_policy_arn,
    trust_policy,
)
from .resource_graph import ResourceKind, converge_plan, teardown_plan

logger = logging.getLogger(__name__)


class ReconcileStep:
    """A single cloud call (or deliberate skip) made while reconciling."""

    def __init__(self, kind: ResourceKind, operation: str, resource: str = "", mutating: bool = False):
        self.kind = kind
        self.operation = operation
        self.resource = resource
        self.mutating = mutating
        self.executed_at: Optional[datetime] = None
        self.success: bool = False
        self.skipped: bool = False
        self.error: Optional[str] = None
        self.result: Optional[Any] = None

    def mark_success(self, result: Any = None):
        """Mark step as successful."""
        self.executed_at = datetime.now(timezone.utc)
        self.success = True
        self.result = result

    def mark_failure(self, error: str):
        """Mark step as failed."""
        self.executed_at = datetime.now(timezone.utc)
        self.success = False
        self.error = error

    def mark_skipped(self, reason: str):
        """Mark step as not needed because live state already matches."""
        self.executed_at = datetime.now(timezone.utc)
        self.success = True
        self.skipped = True
        self.result = reason

    def to_dict(self) -> Dict[str, Any]:
        """Convert step to dictionary for serialization."""
        return {
            "resource_kind": self.kind.value,
            "operation": self.operation,
            "resource": self.resource,
            "mutating": self.mutating and not self.skipped,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "success": self.success,
            "skipped": self.skipped,
            "error": self.error,
            "result": self.result if isinstance(self.result, (str, int, bool, type(None))) else str(self.result),
        }


class _LiveState:
    """What converge has learned about the account so far."""

    def __init__(self):
        self.role_arn: Optional[str] = None
        self.role_created = False
        self.trust_policy_drift = False
        self.attached: Dict[str, str] = {}  # policy arn -> policy name
        self.inline: Set[str] = set()
        self.bucket_connector: Optional[Any] = None
        self.bucket_policy_arn: Optional[str] = None


class Reconciler:
    """
    Converges and tears down one integration role in one account.

    The reconciler is bound to a connector for the target account. Bucket
    reconciliation needs a second connector in the bucket's region, which is
    obtained from ``session_provider``.
    """

    def __init__(self, connector: Any, session_provider: Optional[Any] = None, audit_logger: Optional[Any] = None):
        """
        Initialize the reconciler.

        Args:
            connector: Authenticated connector (AWSConnector or MockAWSConnector)
            session_provider: Provider used to authenticate bucket-region connectors
            audit_logger: Optional AuditLogger receiving one record per operation
        """
        self.connector = connector
        self.session_provider = session_provider
        self.audit_logger = audit_logger
        self.steps: List[ReconcileStep] = []

    @classmethod
    def for_account(
        cls,
        session_provider: Any,
        account_id: str,
        role_name: Optional[str] = None,
        region: Optional[str] = None,
        audit_logger: Optional[Any] = None,
    ) -> "Reconciler":
        """Authenticate to ``account_id`` and return a reconciler bound to it."""
        connector = session_provider.authenticate(account_id, role_name, region)
        return cls(connector, session_provider=session_provider, audit_logger=audit_logger)

    @property
    def partition(self) -> str:
        return self.connector.partition

    # Converge

    def converge(self, config: IntegrationConfig) -> ReconciliationResult:
        """
        Create or complete the integration described by ``config``.

        Args:
            config: Desired integration state

        Returns:
            ReconciliationResult carrying the role ARN

        Raises:
            ReconcileError: the failure of the first step that failed, wrapped
                            with its operation and integration name
        """
        return self._converge(config, ReconcileOperation.CONVERGE)

    def _check_account(self, config: IntegrationConfig) -> None:
        if config.account_id != self.connector.account_id:
            raise ValidationError(
                f"Integration {config.integration_name} targets account {config.account_id} "
                f"but the reconciler is bound to account {self.connector.account_id}",
                operation="Converge",
                integration_name=config.integration_name,
            )

    def _converge(self, config: IntegrationConfig, operation: ReconcileOperation) -> ReconciliationResult:
        self._check_account(config)
        name = config.integration_name
        started_at = datetime.now(timezone.utc)
        self.steps = []
        state = _LiveState()

        handlers: Dict[ResourceKind, Callable[[IntegrationConfig, _LiveState], None]] = {
            ResourceKind.ROLE: self._ensure_role,
            ResourceKind.INLINE_POLICY: self._ensure_inline_policy,
            ResourceKind.VIEW_ONLY_ATTACHMENT: lambda c, s: self._ensure_managed_attachment(
                ResourceKind.VIEW_ONLY_ATTACHMENT, VIEW_ONLY_ACCESS, c, s
            ),
            ResourceKind.SECURITY_AUDIT_ATTACHMENT: lambda c, s: self._ensure_managed_attachment(
                ResourceKind.SECURITY_AUDIT_ATTACHMENT, SECURITY_AUDIT, c, s
            ),
            ResourceKind.BUCKET: self._verify_bucket,
            ResourceKind.BUCKET_POLICY: self._ensure_bucket_policy,
            ResourceKind.BUCKET_POLICY_ATTACHMENT: self._ensure_bucket_policy_attachment,
        }

        logger.info(f"Converging integration {name} in account {config.account_id} (update={config.is_update})")
        for node in converge_plan(include_bucket=bool(config.bucket_name)):
            try:
                handlers[node.kind](config, state)
            except ReconcileError as e:
                logger.error(f"Converge of {name} failed at {node.kind.value}: {e}")
                rolled_back = False
                if config.is_update:
                    logger.warning(f"Leaving partial state of {name} in place for the update caller")
                elif isinstance(e, ResourceExistsConflict) and e.operation == "CreateRole":
                    # The role belongs to whoever created it concurrently
                    logger.warning(f"Role {name} was created by another caller; not rolling back")
                else:
                    rolled_back = self._compensate(name)

                error = e.wrap(e.operation or node.kind.value, name)
                self._audit(operation, name, config.account_id, success=False, error=error, rolled_back=rolled_back)
                raise error from e

        result = ReconciliationResult(
            operation=operation,
            integration_name=name,
            account_id=config.account_id,
            role_arn=state.role_arn,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            role_created=state.role_created,
            trust_policy_drift=state.trust_policy_drift,
            actions_taken=[step.to_dict() for step in self.steps],
        )
        logger.info(f"Converged integration {name}: {state.role_arn} (changed={result.changed})")
        self._audit(operation, name, config.account_id, success=True, role_arn=state.role_arn)
        return result

    def _ensure_role(self, config: IntegrationConfig, state: _LiveState) -> None:
        name = config.integration_name
        desired = trust_policy(config.upt_account_id, config.external_id, self.partition)

        def probe():
            try:
                return self.connector.get_role(name)
            except NotFoundError:
                return None

        role = self._run(ResourceKind.ROLE, "GetRole", name, probe)
        if role is None:
            state.role_arn = self._run(
                ResourceKind.ROLE,
                "CreateRole",
                name,
                lambda: self.connector.create_role(name, desired.to_json(indent=4), ROLE_DESCRIPTION),
                mutating=True,
            )
            state.role_created = True
        else:
            state.role_arn = role["Arn"]
            state.trust_policy_drift = self._trust_policy_drifted(name, role, desired)

        attached = self._run(
            ResourceKind.ROLE,
            "ListAttachedRolePolicies",
            name,
            lambda: self.connector.list_attached_role_policies(name),
        )
        state.attached = {p.policy_arn: p.policy_name for p in attached}
        state.inline = set(
            self._run(ResourceKind.ROLE, "ListRolePolicies", name, lambda: self.connector.list_role_policies(name))
        )

    def _trust_policy_drifted(self, name: str, role: Dict[str, Any], desired: PolicyDocument) -> bool:
        """Compare the live trust policy with the requested one. The policy is never rewritten."""
        live = role.get("AssumeRolePolicyDocument")
        if not live:
            return False
        try:
            drifted = PolicyDocument.parse(live) != desired
        except ValueError as e:
            logger.warning(f"Could not parse trust policy of role {name}: {e}")
            return False
        if drifted:
            logger.warning(
                f"Trust policy of role {name} differs from the requested principal/external ID; "
                f"tear down and recreate the integration to rotate it"
            )
        return drifted

    def _ensure_inline_policy(self, config: IntegrationConfig, state: _LiveState) -> None:
        name = config.integration_name
        resource = f"{name}/{READ_ONLY_POLICY_NAME}"
        if READ_ONLY_POLICY_NAME in state.inline:
            self._skip(ResourceKind.INLINE_POLICY, "PutRolePolicy", resource, "inline policy present")
            return

        document = inline_policy_document(config.policy_document)
        self._run(
            ResourceKind.INLINE_POLICY,
            "PutRolePolicy",
            resource,
            lambda: self.connector.put_role_policy(name, READ_ONLY_POLICY_NAME, document),
            mutating=True,
        )
        state.inline.add(READ_ONLY_POLICY_NAME)

    def _ensure_managed_attachment(
        self, kind: ResourceKind, policy: str, config: IntegrationConfig, state: _LiveState
    ) -> None:
        name = config.integration_name
        arn = managed_policy_arn(policy, self.partition)
        if arn in state.attached:
            self._skip(kind, "AttachRolePolicy", arn, f"{policy} already attached")
            return

        self._run(kind, "AttachRolePolicy", arn, lambda: self.connector.attach_role_policy(name, arn), mutating=True)
        state.attached[arn] = policy

    def _verify_bucket(self, config: IntegrationConfig, state: _LiveState) -> None:
        if self.session_provider is None:
            raise ValidationError(
                "Bucket access needs a session provider to reach the bucket region",
                operation="HeadBucket",
            )

        state.bucket_connector = self._run(
            ResourceKind.BUCKET,
            "AssumeRole",
            f"{config.account_id}@{config.bucket_region}",
            lambda: self.session_provider.authenticate(
                config.account_id, config.org_access_role_name, config.bucket_region
            ),
        )
        self._run(
            ResourceKind.BUCKET,
            "HeadBucket",
            config.bucket_name,
            lambda: state.bucket_connector.head_bucket(config.bucket_name),
        )

    def _ensure_bucket_policy(self, config: IntegrationConfig, state: _LiveState) -> None:
        name = config.integration_name
        arn = bucket_policy_arn(config.account_id, name, self.partition)
        state.bucket_policy_arn = arn
        if arn in state.attached:
            self._skip(ResourceKind.BUCKET_POLICY, "CreatePolicy", arn, "bucket policy already attached")
            return

        def probe():
            try:
                return self.connector.get_policy(arn)
            except NotFoundError:
                return None

        if self._run(ResourceKind.BUCKET_POLICY, "GetPolicy", arn, probe) is not None:
            return

        document = bucket_read_policy(config.bucket_name, self.partition).to_json(indent=4)
        self._run(
            ResourceKind.BUCKET_POLICY,
            "CreatePolicy",
            bucket_policy_name(name),
            lambda: self.connector.create_policy(bucket_policy_name(name), document, BUCKET_POLICY_DESCRIPTION),
            mutating=True,
        )

    def _ensure_bucket_policy_attachment(self, config: IntegrationConfig, state: _LiveState) -> None:
        name = config.integration_name
        arn = state.bucket_policy_arn
        if arn in state.attached:
            self._skip(ResourceKind.BUCKET_POLICY_ATTACHMENT, "AttachRolePolicy", arn, "bucket policy already attached")
            return

        self._run(
            ResourceKind.BUCKET_POLICY_ATTACHMENT,
            "AttachRolePolicy",
            arn,
            lambda: self.connector.attach_role_policy(name, arn),
            mutating=True,
        )
        state.attached[arn] = bucket_policy_name(name)

    def _compensate(self, integration_name: str) -> bool:
        """Best-effort teardown after a failed converge. Failures are logged, not raised."""
        logger.info(f"Rolling back integration {integration_name}")
        try:
            self._teardown(integration_name)
        except ReconcileError as e:
            logger.warning(f"Rollback of integration {integration_name} incomplete: {e}")
            return False
        return True

    # Teardown

    def teardown(self, integration_name: str) -> ReconciliationResult:
        """
        Remove every resource converge creates for ``integration_name``.

        Attachments and policies go first and the role last. The first failing
        call aborts the teardown and leaves the remaining resources in place.

        Raises:
            NotFoundError: if the role does not exist
            ReconcileError: for any other failing call
        """
        started_at = datetime.now(timezone.utc)
        self.steps = []
        account_id = self.connector.account_id

        try:
            self._teardown(integration_name)
        except ReconcileError as e:
            error = e.wrap(e.operation or "Teardown", integration_name)
            self._audit(ReconcileOperation.TEARDOWN, integration_name, account_id, success=False, error=error)
            raise error from e

        self._audit(ReconcileOperation.TEARDOWN, integration_name, account_id, success=True)
        return ReconciliationResult(
            operation=ReconcileOperation.TEARDOWN,
            integration_name=integration_name,
            account_id=account_id,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            actions_taken=[step.to_dict() for step in self.steps],
        )

    def _teardown(self, name: str) -> None:
        logger.info(f"Tearing down integration {name} in account {self.connector.account_id}")
        attached = self._run(
            ResourceKind.ROLE,
            "ListAttachedRolePolicies",
            name,
            lambda: self.connector.list_attached_role_policies(name),
        )
        bucket_policies = [p for p in attached if is_bucket_policy(p.policy_name)]

        for node in teardown_plan():
            kind = node.kind
            if kind == ResourceKind.BUCKET_POLICY_ATTACHMENT:
                for policy in bucket_policies:
                    self._detach(kind, name, policy.policy_arn)
            elif kind == ResourceKind.BUCKET_POLICY:
                for policy in bucket_policies:
                    self._run(
                        kind,
                        "DeletePolicy",
                        policy.policy_arn,
                        lambda arn=policy.policy_arn: self.connector.delete_policy(arn),
                        mutating=True,
                    )
            elif kind == ResourceKind.SECURITY_AUDIT_ATTACHMENT:
                for policy in attached:
                    if policy.policy_name == SECURITY_AUDIT:
                        self._detach(kind, name, policy.policy_arn)
            elif kind == ResourceKind.VIEW_ONLY_ATTACHMENT:
                for policy in attached:
                    if policy.policy_name == VIEW_ONLY_ACCESS:
                        self._detach(kind, name, policy.policy_arn)
            elif kind == ResourceKind.INLINE_POLICY:
                inline = self._run(kind, "ListRolePolicies", name, lambda: self.connector.list_role_policies(name))
                if READ_ONLY_POLICY_NAME in inline:
                    self._run(
                        kind,
                        "DeleteRolePolicy",
                        f"{name}/{READ_ONLY_POLICY_NAME}",
                        lambda: self.connector.delete_role_policy(name, READ_ONLY_POLICY_NAME),
                        mutating=True,
                    )
            elif kind == ResourceKind.ROLE:
                self._run(kind, "DeleteRole", name, lambda: self.connector.delete_role(name), mutating=True)

        logger.info(f"Tore down integration {name}")

    def _detach(self, kind: ResourceKind, role_name: str, policy_arn: str) -> None:
        self._run(
            kind,
            "DetachRolePolicy",
            policy_arn,
            lambda: self.connector.detach_role_policy(role_name, policy_arn),
            mutating=True,
        )

    # Read and replace

    def describe(self, integration_name: str) -> str:
        """Return the ARN of the integration role, raising NotFoundError if it is absent."""
        try:
            return self.connector.get_role(integration_name)["Arn"]
        except ReconcileError as e:
            raise e.wrap(e.operation or "GetRole", integration_name) from e

    def replace(self, config: IntegrationConfig) -> ReconciliationResult:
        """
        Tear down the integration (if present) and converge it again.

        The converge runs as an update, so a failure leaves whatever was
        recreated in place instead of rolling it back.
        """
        self._check_account(config)
        name = config.integration_name
        try:
            self.connector.get_role(name)
            exists = True
        except NotFoundError:
            exists = False
        except ReconcileError as e:
            raise e.wrap(e.operation or "GetRole", name) from e

        if exists:
            self.teardown(name)
        else:
            logger.info(f"Integration {name} not present, nothing to tear down before recreating")

        return self._converge(config.model_copy(update={"is_update": True}), ReconcileOperation.REPLACE)

    # Helpers

    def _run(
        self,
        kind: ResourceKind,
        operation: str,
        resource: str,
        call: Callable[[], Any],
        mutating: bool = False,
    ) -> Any:
        step = ReconcileStep(kind, operation, resource, mutating=mutating)
        self.steps.append(step)
        try:
            result = call()
        except ReconcileError as e:
            step.mark_failure(str(e))
            raise
        step.mark_success(result)
        return result

    def _skip(self, kind: ResourceKind, operation: str, resource: str, reason: str) -> None:
        step = ReconcileStep(kind, operation, resource, mutating=True)
        step.mark_skipped(reason)
        self.steps.append(step)
        logger.debug(f"Skipping {operation} {resource}: {reason}")

    def _audit(
        self,
        operation: ReconcileOperation,
        integration_name: str,
        account_id: Optional[str],
        success: bool,
        role_arn: Optional[str] = None,
        error: Optional[ReconcileError] = None,
        rolled_back: bool = False,
    ) -> None:
        if self.audit_logger is None:
            return
        record = AuditRecord(
            id=str(uuid.uuid4()),
            operation=operation,
            integration_name=integration_name,
            account_id=account_id,
            success=success,
            role_arn=role_arn,
            error_type=type(error).__name__ if error else None,
            error_message=str(error) if error else None,
            rolled_back=rolled_back,
            actions=[step.to_dict() for step in self.steps],
        )
        self.audit_logger.log_event(record)

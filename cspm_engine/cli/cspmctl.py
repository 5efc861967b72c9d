#!/usr/bin/env python3
"""
CSPM Control CLI - Command Line Interface for the CSPM integration engine.

Provides commands for converging, updating and tearing down integration roles,
checking their status, printing the policy documents and reading the audit log.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..audit import AuditLogger
from ..config import EngineSettings, load_integration_config, load_settings
from ..connectors import get_session_provider
from ..engine import Reconciler, bucket_read_policy, read_only_policy, trust_policy
from ..engine.policy_documents import partition_for_region
from ..errors import NotFoundError, ReconcileError
from ..models import IntegrationConfig, ReconciliationResult

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)

# Rich console for pretty output
console = Console()


class CSPMController:
    """Main controller for CSPM engine operations."""

    def __init__(self, settings: EngineSettings, mock_mode: bool = False):
        """Initialize the controller."""
        self.settings = settings
        self.mock_mode = mock_mode
        self.session_provider = get_session_provider(settings, mock=mock_mode)
        self.audit_logger = AuditLogger(settings.audit_dir) if settings.audit_dir else None

    def reconciler(self, account_id: str, role_name: Optional[str] = None) -> Reconciler:
        """Authenticate to ``account_id`` and return a reconciler for it."""
        return Reconciler.for_account(
            self.session_provider,
            account_id,
            role_name=role_name,
            region=self.settings.region,
            audit_logger=self.audit_logger,
        )

    def prepare_mock(self, config: IntegrationConfig) -> None:
        """Give the simulated account the bucket the integration refers to."""
        if self.mock_mode and config.bucket_name:
            self.session_provider.account(config.account_id).buckets.add(config.bucket_name)


def _fail(message: str) -> None:
    console.print(f"[red]✗ {escape(message)}[/red]")
    sys.exit(1)


def _show_result(result: ReconciliationResult) -> None:
    table = Table(title=f"{result.operation.value.title()} {result.integration_name}")
    table.add_column("Resource", style="cyan")
    table.add_column("Operation", style="magenta")
    table.add_column("Target")
    table.add_column("Outcome")

    for action in result.actions_taken:
        if action["skipped"]:
            outcome = "[yellow]unchanged[/yellow]"
        elif action["success"]:
            outcome = "[green]done[/green]"
        else:
            outcome = "[red]failed[/red]"
        table.add_row(action["resource_kind"], action["operation"], action["resource"], outcome)

    console.print(table)
    if result.role_arn:
        console.print(f"[green]Role ARN:[/green] {result.role_arn}")
    if result.trust_policy_drift:
        console.print("[yellow]Trust policy differs from the request; recreate the integration to rotate it[/yellow]")


def _integration_options(func):
    options = [
        click.option("--file", "-f", "config_file", type=click.Path(exists=True), help="Integration YAML/JSON file"),
        click.option("--integration-name", help="Name of the integration role"),
        click.option("--account-id", help="Target AWS account ID"),
        click.option("--upt-account-id", help="Account ID allowed to assume the role"),
        click.option("--external-id", help="External ID required by the trust policy"),
        click.option("--org-access-role-name", help="Role assumed in the target account"),
        click.option(
            "--policy-file", type=click.Path(exists=True), help="Inline read-only policy override (JSON)"
        ),
        click.option("--bucket-name", help="CloudTrail bucket to grant read access to"),
        click.option("--bucket-region", help="Region of the CloudTrail bucket"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _build_config(config_file, policy_file, **fields) -> IntegrationConfig:
    if policy_file:
        fields["policy_document"] = Path(policy_file).read_text(encoding="utf-8")
    return load_integration_config(config_file or {}, **fields)


@click.group()
@click.option("--config", "-c", "config_path", help="Path to settings file")
@click.option("--mock/--real", default=False, help="Use the in-memory backend instead of AWS")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, config_path, mock, verbose):
    """CSPM Control CLI - integration role provisioning"""
    ctx.ensure_object(dict)
    try:
        settings = load_settings(config_path)
    except ReconcileError as e:
        _fail(str(e))

    logging.basicConfig(level=logging.DEBUG if verbose else settings.log_level.upper(), format=LOG_FORMAT)
    ctx.obj["controller"] = CSPMController(settings, mock_mode=mock)


@cli.command()
@_integration_options
@click.option("--update", "is_update", is_flag=True, help="Do not roll back on failure")
@click.pass_context
def converge(ctx, config_file, policy_file, is_update, **fields):
    """Create or complete an integration role."""
    controller = ctx.obj["controller"]

    try:
        config = _build_config(config_file, policy_file, is_update=is_update or None, **fields)
        controller.prepare_mock(config)
        console.print(f"[blue]Converging {config.integration_name} in account {config.account_id}[/blue]")
        reconciler = controller.reconciler(config.account_id, config.org_access_role_name)
        result = reconciler.converge(config)
    except ReconcileError as e:
        _fail(f"Converge failed: {e}")

    _show_result(result)
    state = "updated" if result.changed else "already converged"
    console.print(f"[green]✓ Integration {state}[/green]")


@cli.command()
@_integration_options
@click.pass_context
def update(ctx, config_file, policy_file, **fields):
    """Tear down and recreate an integration role."""
    controller = ctx.obj["controller"]

    try:
        config = _build_config(config_file, policy_file, **fields)
        controller.prepare_mock(config)
        console.print(f"[blue]Recreating {config.integration_name} in account {config.account_id}[/blue]")
        reconciler = controller.reconciler(config.account_id, config.org_access_role_name)
        result = reconciler.replace(config)
    except ReconcileError as e:
        _fail(f"Update failed: {e}")

    _show_result(result)
    console.print("[green]✓ Integration recreated[/green]")


@cli.command()
@click.option("--account-id", required=True, help="Target AWS account ID")
@click.option("--integration-name", required=True, help="Name of the integration role")
@click.option("--org-access-role-name", help="Role assumed in the target account")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def teardown(ctx, account_id, integration_name, org_access_role_name, yes):
    """Remove an integration role and its policies."""
    controller = ctx.obj["controller"]

    if not yes and not click.confirm(f"Delete integration {integration_name} from account {account_id}?"):
        console.print("[yellow]Aborted[/yellow]")
        return

    try:
        reconciler = controller.reconciler(account_id, org_access_role_name)
        result = reconciler.teardown(integration_name)
    except ReconcileError as e:
        _fail(f"Teardown failed: {e}")

    _show_result(result)
    console.print(f"[green]✓ Integration {integration_name} removed[/green]")


@cli.command()
@click.option("--account-id", required=True, help="Target AWS account ID")
@click.option("--integration-name", required=True, help="Name of the integration role")
@click.option("--org-access-role-name", help="Role assumed in the target account")
@click.option("--org-check/--no-org-check", default=True, help="Check organization membership first")
@click.pass_context
def status(ctx, account_id, integration_name, org_access_role_name, org_check):
    """Show whether an integration role exists."""
    controller = ctx.obj["controller"]

    table = Table(title=f"Integration {integration_name}")
    table.add_column("Check", style="cyan")
    table.add_column("Result", style="magenta")

    try:
        if org_check:
            in_org = controller.session_provider.account_in_organization(account_id)
            table.add_row("Account in organization", "yes" if in_org else "no")
            if not in_org:
                console.print(table)
                console.print("[yellow]Account has left the organization; integration is gone[/yellow]")
                return

        reconciler = controller.reconciler(account_id, org_access_role_name)
        role_arn = reconciler.describe(integration_name)
        table.add_row("Role ARN", role_arn)
    except NotFoundError:
        table.add_row("Role ARN", "[red]not found[/red]")
        console.print(table)
        sys.exit(1)
    except ReconcileError as e:
        _fail(f"Status check failed: {e}")

    console.print(table)


@cli.command("show-policy")
@click.argument("kind", type=click.Choice(["trust", "read-only", "bucket"]))
@click.option("--upt-account-id", help="Account ID allowed to assume the role (trust)")
@click.option("--external-id", help="External ID (trust)")
@click.option("--bucket-name", help="CloudTrail bucket (bucket)")
@click.pass_context
def show_policy(ctx, kind, upt_account_id, external_id, bucket_name):
    """Print one of the policy documents the engine manages."""
    partition = partition_for_region(ctx.obj["controller"].settings.region)

    if kind == "trust":
        if not upt_account_id or not external_id:
            _fail("--upt-account-id and --external-id are required for the trust policy")
        document = trust_policy(upt_account_id, external_id, partition)
    elif kind == "bucket":
        if not bucket_name:
            _fail("--bucket-name is required for the bucket policy")
        document = bucket_read_policy(bucket_name, partition)
    else:
        document = read_only_policy()

    click.echo(document.to_json(indent=4))


@cli.command()
@click.option("--integration-name", help="Only show records for this integration")
@click.option("--account-id", help="Only show records for this account")
@click.option("--limit", default=20, show_default=True, help="Maximum number of records")
@click.pass_context
def audit(ctx, integration_name, account_id, limit):
    """Show recent audit records."""
    audit_logger = ctx.obj["controller"].audit_logger
    if audit_logger is None:
        _fail("Auditing is disabled; set audit_dir in the settings file or CSPM_AUDIT_DIR")

    records = audit_logger.get_events(integration_name=integration_name, account_id=account_id, limit=limit)

    table = Table(title="Audit Records")
    table.add_column("Timestamp", style="cyan")
    table.add_column("Operation")
    table.add_column("Integration")
    table.add_column("Account")
    table.add_column("Result")

    for record in records:
        outcome = "[green]ok[/green]" if record.success else f"[red]{record.error_type}[/red]"
        table.add_row(
            record.timestamp.isoformat(),
            record.operation.value,
            record.integration_name,
            record.account_id or "",
            outcome,
        )

    console.print(table)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()

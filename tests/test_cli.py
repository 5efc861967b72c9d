"""
Tests for the cspmctl command line interface, run against the mock backend.
"""

import json

import pytest
from click.testing import CliRunner

from cspm_engine.audit import AuditLogger
from cspm_engine.cli.cspmctl import cli
from cspm_engine.models import ReconcileOperation

from .conftest import ACCOUNT_ID, BUCKET_NAME, EXTERNAL_ID, INTEGRATION_NAME, UPT_ACCOUNT_ID

INTEGRATION_ARGS = [
    "--integration-name",
    INTEGRATION_NAME,
    "--account-id",
    ACCOUNT_ID,
    "--upt-account-id",
    UPT_ACCOUNT_ID,
    "--external-id",
    EXTERNAL_ID,
]


@pytest.fixture
def runner():
    return CliRunner()


class TestConvergeCommands:
    """Test cases for converge and update."""

    def test_converge(self, runner):
        """Test a converge against a fresh mock account."""
        result = runner.invoke(cli, ["--mock", "converge", *INTEGRATION_ARGS])

        assert result.exit_code == 0, result.output
        assert "Integration updated" in result.output

    def test_converge_with_bucket(self, runner):
        """Test a converge that also grants bucket access."""
        result = runner.invoke(
            cli,
            ["--mock", "converge", *INTEGRATION_ARGS, "--bucket-name", BUCKET_NAME, "--bucket-region", "us-east-1"],
        )

        assert result.exit_code == 0, result.output

    def test_converge_from_file(self, runner, tmp_path):
        """Test reading the integration from a YAML file."""
        path = tmp_path / "integration.yaml"
        path.write_text(
            f"integration_name: {INTEGRATION_NAME}\n"
            f"account_id: '{ACCOUNT_ID}'\n"
            f"upt_account_id: '{UPT_ACCOUNT_ID}'\n"
            f"external_id: {EXTERNAL_ID}\n"
        )

        result = runner.invoke(cli, ["--mock", "converge", "-f", str(path)])

        assert result.exit_code == 0, result.output

    def test_converge_invalid_config(self, runner):
        """Test that a malformed account ID fails with exit code 1."""
        result = runner.invoke(cli, ["--mock", "converge", *INTEGRATION_ARGS, "--account-id", "123"])

        assert result.exit_code == 1
        assert "Converge failed" in result.output

    def test_unknown_log_level(self, runner):
        """Test that a bad log level in the environment exits cleanly."""
        result = runner.invoke(cli, ["--mock", "converge", *INTEGRATION_ARGS], env={"CSPM_LOG_LEVEL": "verbose"})

        assert result.exit_code == 1
        assert "Invalid settings" in result.output

    def test_update(self, runner):
        """Test recreating an integration that does not exist yet."""
        result = runner.invoke(cli, ["--mock", "update", *INTEGRATION_ARGS])

        assert result.exit_code == 0, result.output
        assert "Integration recreated" in result.output


class TestTeardownAndStatus:
    """Test cases for teardown and status."""

    def test_teardown_missing_integration(self, runner):
        """Test that removing an absent integration fails."""
        result = runner.invoke(
            cli, ["--mock", "teardown", "--account-id", ACCOUNT_ID, "--integration-name", INTEGRATION_NAME, "--yes"]
        )

        assert result.exit_code == 1
        assert "Teardown failed" in result.output

    def test_teardown_declined(self, runner):
        """Test that answering no to the confirmation does nothing."""
        result = runner.invoke(
            cli,
            ["--mock", "teardown", "--account-id", ACCOUNT_ID, "--integration-name", INTEGRATION_NAME],
            input="n\n",
        )

        assert result.exit_code == 0
        assert "Aborted" in result.output

    def test_status_missing_role(self, runner):
        """Test that status exits non-zero when the role is absent."""
        result = runner.invoke(
            cli,
            ["--mock", "status", "--account-id", ACCOUNT_ID, "--integration-name", INTEGRATION_NAME, "--no-org-check"],
        )

        assert result.exit_code == 1

    def test_status_account_outside_organization(self, runner):
        """Test that an account outside the organization is reported as gone."""
        result = runner.invoke(
            cli, ["--mock", "status", "--account-id", ACCOUNT_ID, "--integration-name", INTEGRATION_NAME]
        )

        assert result.exit_code == 0
        assert "left the organization" in result.output


class TestShowPolicy:
    """Test cases for printing policy documents."""

    def test_trust_policy(self, runner):
        """Test that the trust policy is printed as JSON."""
        result = runner.invoke(
            cli, ["show-policy", "trust", "--upt-account-id", UPT_ACCOUNT_ID, "--external-id", EXTERNAL_ID]
        )

        assert result.exit_code == 0, result.output
        statement = json.loads(result.output)["Statement"][0]
        assert statement["Principal"]["AWS"] == f"arn:aws:iam::{UPT_ACCOUNT_ID}:root"

    def test_trust_policy_needs_identifiers(self, runner):
        """Test that the trust policy needs the principal and external ID."""
        result = runner.invoke(cli, ["show-policy", "trust"])

        assert result.exit_code == 1

    def test_bucket_policy(self, runner):
        """Test printing the bucket policy."""
        result = runner.invoke(cli, ["show-policy", "bucket", "--bucket-name", BUCKET_NAME])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["Statement"][0]["Resource"] == [f"arn:aws:s3:::{BUCKET_NAME}/*"]


class TestAuditCommand:
    """Test cases for audit records written through the CLI."""

    def test_converge_is_audited(self, runner, tmp_path):
        """Test that a converge run with an audit directory leaves a record."""
        env = {"CSPM_AUDIT_DIR": str(tmp_path)}
        result = runner.invoke(cli, ["--mock", "converge", *INTEGRATION_ARGS], env=env)
        assert result.exit_code == 0, result.output

        records = AuditLogger(tmp_path).get_events(integration_name=INTEGRATION_NAME)
        assert len(records) == 1
        assert records[0].operation == ReconcileOperation.CONVERGE
        assert records[0].success is True

        result = runner.invoke(cli, ["--mock", "audit"], env=env)
        assert result.exit_code == 0, result.output

    def test_audit_disabled(self, runner, monkeypatch):
        """Test that the audit command needs an audit directory."""
        monkeypatch.delenv("CSPM_AUDIT_DIR", raising=False)

        result = runner.invoke(cli, ["--mock", "audit"])

        assert result.exit_code == 1
        assert "Auditing is disabled" in result.output

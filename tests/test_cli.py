"""
Tests for the iamctl command line interface.
"""

import pytest
import yaml
from click.testing import CliRunner

from iam_reconciler.audit import AuditLogger
from iam_reconciler.cli.reconctl import cli
from iam_reconciler.config import ENV_AUDIT_DIR, ENV_MOCK

from tests.conftest import write_tree

MASTER = {"account_id": "111111111111", "enacting_role": "deployer"}
POLICY = {"Version": "2012-10-17", "Statement": [{"Effect": "Allow", "Action": "s3:*", "Resource": "*"}]}


def template(role_name="${RoleName}"):
    return {"Resources": {"Role": {"Type": "AWS::IAM::Role", "Properties": {
        "RoleName": role_name,
        "AssumeRolePolicyDocument": {"Statement": []},
    }}}}


class TestCLI:
    """Test cases for iamctl commands."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        monkeypatch.delenv(ENV_MOCK, raising=False)
        monkeypatch.delenv(ENV_AUDIT_DIR, raising=False)

    @pytest.fixture
    def runner(self):
        return CliRunner()

    @pytest.fixture
    def config_path(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({
            "mock_mode": True,
            "throttle_seconds": 0,
            "audit_dir": str(tmp_path / "audit"),
        }))
        return str(path)

    @pytest.fixture
    def root(self, tmp_path):
        return str(write_tree(tmp_path / "defs", {
            "master": (MASTER, {"external-admin": (template(), POLICY), "auditor": (template(), POLICY)}),
        }))

    def test_validate(self, runner, root):
        result = runner.invoke(cli, ["validate", root])

        assert result.exit_code == 0
        assert "1 accounts valid" in result.output

    def test_validate_rejects_non_mapping_account_file(self, runner, tmp_path):
        root = write_tree(tmp_path / "bad", {"master": (MASTER, {})})
        (root / "master" / "account.yaml").write_text("- not\n- a mapping\n")

        result = runner.invoke(cli, ["validate", str(root)])

        assert result.exit_code == 1
        assert "mapping" in result.output

    def test_validate_reports_errors(self, runner, tmp_path):
        root = write_tree(tmp_path / "bad", {"master": (MASTER, {"ops": (template("admin"), POLICY)})})

        result = runner.invoke(cli, ["validate", str(root)])

        assert result.exit_code == 1
        assert "admin" in result.output

    def test_plan(self, runner, root):
        result = runner.invoke(cli, ["plan", root, "--role", "audit"])

        assert result.exit_code == 0
        assert "auditor" in result.output
        assert "external-admin" not in result.output

    def test_apply_then_audit_trail(self, runner, root, config_path, tmp_path):
        result = runner.invoke(cli, ["--config", config_path, "apply", root, "--yes"])

        assert result.exit_code == 0, result.output
        assert "Reconciled 1 accounts" in result.output
        records = AuditLogger(str(tmp_path / "audit")).get_events(role="auditor")
        assert "upsert_stack" in {record.action for record in records}

        result = runner.invoke(cli, ["--config", config_path, "audit-trail", "--role", "auditor"])

        assert result.exit_code == 0
        assert "Audit Trail" in result.output

    def test_apply_declined(self, runner, root, config_path):
        result = runner.invoke(cli, ["--config", config_path, "apply", root], input="n\n")

        assert result.exit_code == 0
        assert "Aborted" in result.output

    def test_apply_aborts_on_invalid_policy(self, runner, tmp_path, config_path):
        root = write_tree(tmp_path / "broken", {"master": (MASTER, {"ops": (template(), {"Version": "2012-10-17"})})})

        result = runner.invoke(cli, ["--config", config_path, "apply", str(root), "-y"])

        assert result.exit_code == 1
        assert "aborted" in result.output
        assert "ops" in result.output

    def test_audit_trail_empty(self, runner, config_path):
        result = runner.invoke(cli, ["--config", config_path, "audit-trail"])

        assert result.exit_code == 0
        assert "No audit records found" in result.output

    def test_whoami(self, runner, config_path):
        result = runner.invoke(cli, ["--config", config_path, "whoami"])

        assert result.exit_code == 0
        assert "000000000000" in result.output

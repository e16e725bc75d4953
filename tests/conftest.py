"""
Shared fixtures for the IAM Reconciler tests.
"""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from iam_reconciler.config import ReconcilerSettings
from iam_reconciler.connectors import MockConnector
from iam_reconciler.models import (
    AccountDefinition,
    CredentialContext,
    PolicyDefinition,
    RoleDefinition,
    role_arn,
)

MASTER_ACCOUNT_ID = "111111111111"


def role_template(role_name: str, description: str = "Managed role",
                  managed_policies=None) -> str:
    """Stack template declaring a single named role."""
    properties = {
        "RoleName": role_name,
        "Description": description,
        "AssumeRolePolicyDocument": {
            "Version": "2012-10-17",
            "Statement": [{
                "Effect": "Allow",
                "Principal": {"AWS": "arn:aws:iam::999999999999:root"},
                "Action": "sts:AssumeRole",
            }],
        },
    }
    if managed_policies:
        properties["ManagedPolicyArns"] = list(managed_policies)
    return json.dumps({
        "AWSTemplateFormatVersion": "2010-09-09",
        "Resources": {"Role": {"Type": "AWS::IAM::Role", "Properties": properties}},
    })


def policy_document(*actions: str) -> str:
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [{"Effect": "Allow", "Action": list(actions or ["s3:ListBucket"]), "Resource": "*"}],
    })


def assume(connector: MockConnector, account_id: str = MASTER_ACCOUNT_ID, role_name: str = "deployer"):
    """Point the mock connector at an account, as the credential manager would."""
    connector.set_credentials(CredentialContext(
        access_key_id="ASIATEST",
        secret_access_key="secret",
        session_token="token",
        expiration=datetime.now(timezone.utc) + timedelta(hours=1),
        assumed_role_arn=role_arn(account_id, role_name),
    ))


class FakeClock:
    """Deterministic clock whose sleep() advances time."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def mock_connector():
    """Mock backend already switched to the master account."""
    connector = MockConnector()
    assume(connector)
    return connector


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def master_account():
    return AccountDefinition(
        name="master",
        account_id=MASTER_ACCOUNT_ID,
        region="us-east-1",
        enacting_role="deployer",
    )


def make_role(role_name: str, account_id: str = MASTER_ACCOUNT_ID, template_body: str = None,
              document_body: str = None) -> RoleDefinition:
    return RoleDefinition(
        role_name=role_name,
        template_body=template_body or role_template(role_name),
        policy=PolicyDefinition(
            policy_name=role_name,
            document_body=document_body or policy_document(),
            account_id=account_id,
        ),
    )


@pytest.fixture
def settings(tmp_path):
    return ReconcilerSettings(
        mock_mode=True,
        throttle_seconds=0.5,
        max_wait_seconds=30,
        poll_interval_seconds=2,
        audit_dir=str(tmp_path / "audit"),
    )


def write_tree(root: Path, accounts: dict, global_template: dict = None,
               parameters: dict = None) -> Path:
    """
    Write a definition tree.

    accounts maps account name to (account fields, {role name: (template dict, policy dict)}).
    """
    root.mkdir(parents=True, exist_ok=True)
    if global_template is not None:
        (root / "global.json").write_text(json.dumps(global_template))
    if parameters is not None:
        (root / "parameters.json").write_text(json.dumps(parameters))

    for name, (fields, roles) in accounts.items():
        folder = root / name
        folder.mkdir()
        lines = [f"{key}: '{value}'" for key, value in fields.items()]
        (folder / "account.yaml").write_text("\n".join(lines) + "\n")
        for role_name, (template, policy) in roles.items():
            role_folder = folder / role_name
            role_folder.mkdir()
            if template is not None:
                (role_folder / "template.json").write_text(json.dumps(template))
            if policy is not None:
                (role_folder / "policy.json").write_text(json.dumps(policy))
    return root

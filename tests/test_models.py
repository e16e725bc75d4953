"""
Tests for data models and status classification.
"""

import pytest
from pydantic import ValidationError

from iam_reconciler.models import (
    AccountDefinition,
    ChangeSetStatus,
    PolicyDefinition,
    ReconcileSummary,
    RoleDefinition,
    RoleOutcome,
    RoleResult,
    PolicyAction,
    StackStatus,
    StatusClass,
)


class TestStatusClassification:
    """Status codes map to coarse classes instead of keyword matching."""

    @pytest.mark.parametrize("status", [
        StackStatus.CREATE_COMPLETE, StackStatus.UPDATE_COMPLETE, StackStatus.IMPORT_COMPLETE,
    ])
    def test_stack_success(self, status):
        assert status.classification == StatusClass.SUCCEEDED
        assert status.is_terminal
        assert not status.is_failed

    @pytest.mark.parametrize("status", [
        StackStatus.CREATE_FAILED, StackStatus.ROLLBACK_COMPLETE, StackStatus.ROLLBACK_FAILED,
        StackStatus.UPDATE_ROLLBACK_COMPLETE, StackStatus.DELETE_COMPLETE,
    ])
    def test_stack_failure(self, status):
        assert status.is_terminal
        assert status.is_failed

    @pytest.mark.parametrize("status", [
        StackStatus.CREATE_IN_PROGRESS, StackStatus.UPDATE_COMPLETE_CLEANUP_IN_PROGRESS,
        StackStatus.UPDATE_ROLLBACK_IN_PROGRESS, StackStatus.REVIEW_IN_PROGRESS,
    ])
    def test_stack_in_progress(self, status):
        assert not status.is_terminal

    def test_change_set_classes(self):
        assert ChangeSetStatus.CREATE_COMPLETE.classification == StatusClass.READY
        assert ChangeSetStatus.EMPTY.classification == StatusClass.EMPTY
        assert ChangeSetStatus.FAILED.classification == StatusClass.FAILED
        assert not ChangeSetStatus.CREATE_PENDING.is_terminal
        assert not ChangeSetStatus.CREATE_IN_PROGRESS.is_terminal


class TestDefinitions:
    """Test cases for account and role definitions."""

    def test_account_id_is_normalized(self):
        account = AccountDefinition(name="master", account_id=111111111111, enacting_role="deployer")

        assert account.account_id == "111111111111"
        assert account.region == "us-east-1"

    @pytest.mark.parametrize("account_id", ["12345", "abcdefghijkl", "1234567890123"])
    def test_invalid_account_id(self, account_id):
        with pytest.raises(ValidationError):
            AccountDefinition(name="x", account_id=account_id, enacting_role="deployer")

    def test_enacting_role_arn_passthrough(self):
        arn = "arn:aws:iam::111111111111:role/path/deployer"
        account = AccountDefinition(name="x", account_id="111111111111", enacting_role=arn)

        assert account.enacting_role_arn == arn

    def test_role_names_must_agree(self):
        policy = PolicyDefinition(policy_name="other", document_body="{}", account_id="111111111111")

        with pytest.raises(ValidationError, match="must equal role name"):
            RoleDefinition(role_name="app", template_body="{}", policy=policy)

    def test_stack_name_defaults_to_role_name(self):
        policy = PolicyDefinition(policy_name="app", document_body="{}", account_id="111111111111")
        role = RoleDefinition(role_name="app", template_body="{}", policy=policy)

        assert role.stack_name == "app"
        assert role.policy.arn == "arn:aws:iam::111111111111:policy/app"

    def test_definitions_are_frozen(self):
        account = AccountDefinition(name="x", account_id="111111111111", enacting_role="deployer")

        with pytest.raises(ValidationError):
            account.region = "eu-west-1"


class TestReconcileSummary:
    def test_counts(self):
        summary = ReconcileSummary(account="master", account_id="111111111111", workflow_id="w")
        summary.roles = [
            RoleResult(role_name="a", stack_id="s1", outcome=RoleOutcome.CREATED,
                       policy_action=PolicyAction.CREATED),
            RoleResult(role_name="b", stack_id="s2", outcome=RoleOutcome.UNCHANGED,
                       policy_action=PolicyAction.UPDATED),
            RoleResult(role_name="c", stack_id="s3", outcome=RoleOutcome.UNCHANGED,
                       policy_action=PolicyAction.UPDATED),
        ]

        assert summary.counts() == {"created": 1, "updated": 0, "unchanged": 2}

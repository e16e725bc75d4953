"""
Tests for the StackReconciler change-set state machine.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from iam_reconciler.connectors import ConnectorResult
from iam_reconciler.engine import PollPolicy, StackReconciler
from iam_reconciler.engine.stack_reconciler import change_set_name
from iam_reconciler.exceptions import (
    ChangeSetFailedError,
    ChangeSetTimeoutError,
    StackFailedError,
    StackOperationError,
    StackTimeoutError,
    TemplateInvalidError,
)
from iam_reconciler.models import ChangeSetInfo, ChangeSetStatus, RoleOutcome, StackStatus

from tests.conftest import role_template

REGION = "us-east-1"


class Ticker:
    """Returns a later timestamp on every call."""

    def __init__(self):
        self.current = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


class TestStackReconciler:
    """Test cases for StackReconciler."""

    @pytest.fixture
    def reconciler(self, mock_connector, fake_clock):
        return StackReconciler(
            mock_connector,
            PollPolicy(interval=2, timeout=30),
            sleep=fake_clock.sleep,
            clock=fake_clock,
            now=Ticker(),
        )

    def test_creates_missing_stack(self, reconciler, mock_connector):
        result = reconciler.upsert_stack("app", role_template("app"), REGION)

        assert result.outcome == RoleOutcome.CREATED
        assert result.stack_id.startswith("arn:aws:cloudformation:us-east-1:111111111111:stack/app/")
        assert "app" in mock_connector.account().roles
        assert mock_connector.call_count("create_change_set") == 0

    def test_rerun_is_a_no_op(self, reconciler, mock_connector):
        created = reconciler.upsert_stack("app", role_template("app"), REGION)

        for _ in range(3):
            result = reconciler.upsert_stack("app", role_template("app"), REGION)
            assert result.outcome == RoleOutcome.UNCHANGED
            assert result.stack_id == created.stack_id

        assert mock_connector.call_count("create_change_set") == 3
        assert mock_connector.call_count("execute_change_set") == 0

    def test_changed_template_updates_in_place(self, reconciler, mock_connector):
        created = reconciler.upsert_stack("app", role_template("app"), REGION)

        result = reconciler.upsert_stack(
            "app", role_template("app", managed_policies=["arn:aws:iam::aws:policy/ReadOnlyAccess"]),
            REGION,
        )

        assert result.outcome == RoleOutcome.UPDATED
        assert result.stack_id == created.stack_id
        assert result.change_set_name == "app-20240501120001000000"
        assert mock_connector.call_count("execute_change_set") == 1
        stack = mock_connector.account().stacks["app"]
        assert stack["status"] == StackStatus.UPDATE_COMPLETE
        assert mock_connector.account().roles["app"]["attached_policies"] == [
            "arn:aws:iam::aws:policy/ReadOnlyAccess"
        ]

    @pytest.mark.parametrize("body", ["not json", '{"Resources": {}}'])
    def test_invalid_template_mutates_nothing(self, reconciler, mock_connector, body):
        with pytest.raises(TemplateInvalidError):
            reconciler.upsert_stack("app", body, REGION)

        assert mock_connector.call_count("create_stack") == 0
        assert mock_connector.call_count("create_change_set") == 0

    def test_waits_for_slow_stack(self, mock_connector, fake_clock):
        mock_connector.pending_polls = 3
        reconciler = StackReconciler(mock_connector, PollPolicy(interval=2, timeout=30),
                                     sleep=fake_clock.sleep, clock=fake_clock)

        result = reconciler.upsert_stack("app", role_template("app"), REGION)

        assert result.outcome == RoleOutcome.CREATED
        assert fake_clock.sleeps == [2, 2, 2]

    def test_stack_timeout(self, reconciler, mock_connector, fake_clock):
        mock_connector.pending_polls = 100

        with pytest.raises(StackTimeoutError) as exc_info:
            reconciler.upsert_stack("app", role_template("app"), REGION, max_wait_seconds=10)

        assert exc_info.value.last_status == "CREATE_IN_PROGRESS"
        assert fake_clock.now == 10

    def test_change_set_timeout(self, reconciler, mock_connector):
        reconciler.upsert_stack("app", role_template("app"), REGION)
        mock_connector.pending_polls = 100

        with pytest.raises(ChangeSetTimeoutError) as exc_info:
            reconciler.upsert_stack("app", role_template("app", "changed"), REGION)

        assert exc_info.value.last_status == "CREATE_PENDING"
        assert mock_connector.call_count("execute_change_set") == 0

    def test_role_name_collision_rolls_back(self, reconciler, mock_connector):
        mock_connector.add_role("app")

        with pytest.raises(StackFailedError) as exc_info:
            reconciler.upsert_stack("app", role_template("app"), REGION)

        assert exc_info.value.status == "ROLLBACK_COMPLETE"
        assert "already exists" in str(exc_info.value)

    def test_rolled_back_stack_is_not_updated(self, reconciler, mock_connector):
        mock_connector.add_role("app")
        with pytest.raises(StackFailedError):
            reconciler.upsert_stack("app", role_template("app"), REGION)

        with pytest.raises(StackFailedError) as exc_info:
            reconciler.upsert_stack("app", role_template("app"), REGION)

        assert exc_info.value.status == "ROLLBACK_COMPLETE"
        assert mock_connector.call_count("create_change_set") == 0

    def test_update_after_rollback_in_flight(self, reconciler, mock_connector, fake_clock):
        created = reconciler.upsert_stack("app", role_template("app"), REGION)
        stack = mock_connector.account().stacks["app"]
        stack["status"] = StackStatus.UPDATE_ROLLBACK_IN_PROGRESS
        stack["final_status"] = StackStatus.UPDATE_ROLLBACK_COMPLETE
        stack["pending"] = 2

        result = reconciler.upsert_stack("app", role_template("app", "changed"), REGION)

        assert result.outcome == RoleOutcome.UPDATED
        assert result.stack_id == created.stack_id
        assert mock_connector.call_count("execute_change_set") == 1
        assert fake_clock.sleeps == [2]
        assert stack["status"] == StackStatus.UPDATE_COMPLETE

    def test_failed_change_set(self, reconciler, mock_connector):
        reconciler.upsert_stack("app", role_template("app"), REGION)
        failed = ConnectorResult(True, "Found change set", ChangeSetInfo(
            change_set_name="app-x",
            stack_name="app",
            status=ChangeSetStatus.FAILED,
            status_reason="Requires capabilities : [CAPABILITY_NAMED_IAM]",
        ))

        with patch.object(mock_connector, "get_change_set", return_value=failed):
            with pytest.raises(ChangeSetFailedError, match="CAPABILITY_NAMED_IAM"):
                reconciler.upsert_stack("app", role_template("app", "changed"), REGION)

        assert mock_connector.call_count("execute_change_set") == 0

    def test_failed_create_call(self, reconciler, mock_connector):
        mock_connector.failures["create_stack"] = "LimitExceededException"

        with pytest.raises(StackOperationError, match="LimitExceededException"):
            reconciler.upsert_stack("app", role_template("app"), REGION)


class TestChangeSetName:
    """Test cases for change set naming."""

    def test_name_embeds_timestamp(self):
        now = datetime(2024, 1, 2, 3, 4, 5, 678901, tzinfo=timezone.utc)

        assert change_set_name("app", now) == "app-20240102030405678901"

    def test_names_differ_between_runs(self):
        first = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

        assert change_set_name("app", first) != change_set_name("app", first + timedelta(microseconds=1))

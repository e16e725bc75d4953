"""
Account Reconciliation Workflow for the IAM Reconciler.

Converges each account's roles: switch to the account's enacting role,
then for every selected role upsert its managed policy, remove an
orphaned copy of the role and upsert its stack, in that order. The
first fatal error stops the whole run.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from ..audit.audit_logger import AuditLogger
from ..config import ReconcilerSettings
from ..connectors import BaseConnector
from ..definitions import AccountTree
from ..engine import CredentialManager, PolicyVersionManager, RoleLifecycleManager, StackReconciler
from ..exceptions import ReconcileAbortedError, ReconcileError
from ..models import AccountDefinition, ReconcileSummary, RoleDefinition, RoleResult
from .base_workflow import BaseWorkflow, WorkflowStep
from .helpers import select_roles

logger = logging.getLogger(__name__)


class AccountReconcileWorkflow(BaseWorkflow):
    """
    Workflow reconciling accounts one at a time, roles one at a time.

    A fixed throttle delay is slept between accounts and between roles to
    stay under the backend's API rate limits.
    """

    def __init__(self, settings: Optional[ReconcilerSettings] = None,
                 connector: Optional[BaseConnector] = None,
                 audit_logger: Optional[AuditLogger] = None,
                 sleep: Callable[[float], None] = time.sleep):
        super().__init__(settings, connector, audit_logger)
        self._sleep = sleep

        self.credentials = CredentialManager(self.connector)
        self.policy_manager = PolicyVersionManager(self.connector, self.settings.max_policy_versions)
        self.role_manager = RoleLifecycleManager(self.connector)
        self.stack_reconciler = StackReconciler(self.connector, self.settings.poll_policy(), sleep=sleep)

    def execute(self, trees: Sequence[AccountTree],
                role_filter: Optional[Sequence[str]] = None) -> List[ReconcileSummary]:
        """
        Reconcile every account in order.

        Args:
            trees: Accounts with their role definitions
            role_filter: Optional role name substrings

        Returns:
            One ReconcileSummary per account

        Raises:
            ReconcileAbortedError: at the first fatal error
        """
        self.started_at = datetime.now(timezone.utc)
        summaries = []
        try:
            if trees:
                self._preflight(trees[0].account)
            for index, tree in enumerate(trees):
                if index:
                    self._throttle()
                summaries.append(self.reconcile_account(tree.account, tree.roles, role_filter))
        finally:
            self.credentials.clear()
            self.completed_at = datetime.now(timezone.utc)

        logger.info(f"Reconciled {len(summaries)} accounts in workflow {self.workflow_id}")
        return summaries

    def reconcile_account(self, account: AccountDefinition, roles: Sequence[RoleDefinition],
                          role_filter: Optional[Sequence[str]] = None) -> ReconcileSummary:
        """
        Reconcile one account.

        Args:
            account: The account to converge
            roles: Role definitions of the account
            role_filter: Optional role name substrings

        Returns:
            ReconcileSummary with a RoleResult per selected role

        Raises:
            ReconcileAbortedError: naming the account and the role in progress
        """
        selected = select_roles(roles, role_filter)
        summary = ReconcileSummary(account=account.name, account_id=account.account_id,
                                   workflow_id=self.workflow_id)
        logger.info(f"Reconciling account {account.name} ({account.account_id}): {len(selected)} roles")

        current_role = None
        try:
            self._switch_account(account)
            # Nothing in the account is changed until every selected role validates.
            for role in selected:
                current_role = role.role_name
                self._validate_role(account, role)
            current_role = None

            for index, role in enumerate(selected):
                if index:
                    self._throttle()
                current_role = role.role_name
                summary.roles.append(self._reconcile_role(account, role, summary))
        except ReconcileError as e:
            logger.error(f"Aborting in account {account.name}, role {current_role}: {e}")
            raise ReconcileAbortedError(account.name, current_role, e) from e

        summary.completed_at = datetime.now(timezone.utc)
        summary.actions_taken = [step.to_dict() for step in self.steps
                                 if step.account == account.name]
        logger.info(f"Account {account.name} reconciled: {summary.counts()}")
        return summary

    def _preflight(self, account: AccountDefinition):
        step = WorkflowStep("current_identity", account.name, resource="caller")
        try:
            identity = self._run_step(step, lambda: self.credentials.current_identity(account.region))
        except ReconcileError as e:
            logger.error(f"No usable identity before reconciling {account.name}: {e}")
            raise ReconcileAbortedError(account.name, None, e) from e
        logger.info(f"Running as {identity.arn}")

    def _switch_account(self, account: AccountDefinition):
        role_arn = account.enacting_role_arn
        self._run_step(
            WorkflowStep("assume_role", account.name, resource=role_arn),
            lambda: self.credentials.assume_role(
                role_arn,
                self.settings.session_name,
                account.region,
                self.settings.session_duration_seconds,
            ).assumed_role_arn,
        )
        self._run_step(
            WorkflowStep("current_identity", account.name, resource=role_arn),
            lambda: self.credentials.current_identity(account.region),
        )

    def _validate_role(self, account: AccountDefinition, role: RoleDefinition):
        PolicyVersionManager.validate_document(role.policy_name, role.policy.document_body)
        self._run_step(
            WorkflowStep("validate_template", account.name, resource=role.stack_name,
                         role=role.role_name),
            lambda: self.stack_reconciler.validate_template(
                role.stack_name, role.template_body, account.region
            ),
        )

    def _reconcile_role(self, account: AccountDefinition, role: RoleDefinition,
                        summary: ReconcileSummary) -> RoleResult:
        logger.info(f"Reconciling role {role.role_name} in {account.name}")

        policy_result = self._run_step(
            WorkflowStep("upsert_policy", account.name, resource=role.policy.arn,
                         role=role.role_name),
            lambda: self.policy_manager.upsert_policy(
                account.account_id, role.policy_name, role.policy.document_body
            ),
        )
        for failure in policy_result.prune_failures:
            summary.warnings.append(failure)
            self._record_failure(
                WorkflowStep("delete_policy_version", account.name, resource=role.policy.arn,
                             role=role.role_name),
                failure,
            )

        orphan_removed = self._run_step(
            WorkflowStep("reconcile_orphan", account.name, resource=role.role_name,
                         role=role.role_name),
            lambda: self.role_manager.reconcile_orphan(role.role_name, account.region),
        )

        stack_result = self._run_step(
            WorkflowStep("upsert_stack", account.name, resource=role.stack_name,
                         role=role.role_name),
            lambda: self.stack_reconciler.upsert_stack(
                role.stack_name, role.template_body, account.region,
                self.settings.max_wait_seconds,
            ),
        )

        return RoleResult(
            role_name=role.role_name,
            stack_id=stack_result.stack_id,
            outcome=stack_result.outcome,
            policy_action=policy_result.action,
            orphan_removed=orphan_removed,
        )

    def _throttle(self):
        if self.settings.throttle_seconds > 0:
            self._sleep(self.settings.throttle_seconds)

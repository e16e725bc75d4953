"""
Stack Reconciler for the IAM Reconciler.

Drives create-or-update of a role's backing stack. New stacks are created
directly; existing stacks are updated through a uniquely named change set,
which is only executed when it actually contains changes.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from ..connectors import BaseConnector
from ..exceptions import (
    ChangeSetFailedError,
    ChangeSetTimeoutError,
    StackFailedError,
    StackOperationError,
    StackTimeoutError,
    TemplateInvalidError,
)
from ..models import (
    UPDATABLE_FAILED_STACK_STATUSES,
    ChangeSetInfo,
    RoleOutcome,
    StackInfo,
    StackUpsertResult,
    StatusClass,
)
from .polling import PollPolicy, PollTimeout, poll_until

logger = logging.getLogger(__name__)

# Templates define named IAM roles.
REQUIRED_CAPABILITIES = ["CAPABILITY_NAMED_IAM"]


def change_set_name(stack_name: str, now: Optional[datetime] = None) -> str:
    """Build a change set name that is unique per run: <stack>-<UTC timestamp>."""
    now = now or datetime.now(timezone.utc)
    return f"{stack_name}-{now.strftime('%Y%m%d%H%M%S%f')}"


class StackReconciler:
    """
    Converges a stack to a template body.

    NO_STACK -> create -> CREATE_COMPLETE | failure
    STACK_EXISTS -> change set -> READY (execute, wait) | EMPTY (no-op) | failure
    """

    def __init__(self, connector: BaseConnector, poll_policy: Optional[PollPolicy] = None,
                 sleep: Optional[Callable[[float], None]] = None,
                 clock: Optional[Callable[[], float]] = None,
                 now: Optional[Callable[[], datetime]] = None):
        self.connector = connector
        self.poll_policy = poll_policy or PollPolicy()
        self._poll_kwargs = {}
        if sleep is not None:
            self._poll_kwargs["sleep"] = sleep
        if clock is not None:
            self._poll_kwargs["clock"] = clock
        self._now = now or (lambda: datetime.now(timezone.utc))

    def upsert_stack(self, stack_name: str, template_body: str, region: str,
                     max_wait_seconds: Optional[float] = None) -> StackUpsertResult:
        """
        Create the stack or update it to the given template.

        Args:
            stack_name: Stack name (equal to the role name)
            template_body: Full template body
            region: Region of the stack
            max_wait_seconds: Polling budget per wait; defaults to the poll policy timeout

        Returns:
            StackUpsertResult with the stack id and whether it was created,
            updated or left unchanged

        Raises:
            TemplateInvalidError: the backend rejected the template; nothing was changed
            StackTimeoutError, ChangeSetTimeoutError: a wait ran out of time
            StackFailedError, ChangeSetFailedError: the backend reported failure
            StackOperationError: a call failed outright
        """
        policy = self.poll_policy
        if max_wait_seconds is not None:
            policy = policy.with_timeout(max_wait_seconds)

        self.validate_template(stack_name, template_body, region)

        existing = self.connector.get_stack(stack_name, region)
        if not existing.success and not existing.not_found:
            raise StackOperationError(f"Failed to look up stack {stack_name}: {existing.error}")

        if existing.not_found:
            return self._create_stack(stack_name, template_body, region, policy)
        return self._update_stack(existing.data, template_body, region, policy)

    def validate_template(self, stack_name: str, template_body: str, region: str):
        result = self.connector.validate_template(template_body, region)
        if not result.success:
            logger.error(f"Template for {stack_name} failed validation: {result.error}")
            raise TemplateInvalidError(f"Template for {stack_name} is invalid: {result.error}")

    def _create_stack(self, stack_name: str, template_body: str, region: str,
                      policy: PollPolicy) -> StackUpsertResult:
        created = self.connector.create_stack(stack_name, template_body, region,
                                              REQUIRED_CAPABILITIES)
        if not created.success:
            raise StackOperationError(f"Failed to create stack {stack_name}: {created.error}")
        logger.info(f"Creating stack {stack_name}")

        stack = self.wait_for_stack(stack_name, region, policy)
        logger.info(f"Stack {stack_name} created: {stack.stack_id}")
        return StackUpsertResult(stack_id=stack.stack_id, outcome=RoleOutcome.CREATED)

    def _update_stack(self, stack: StackInfo, template_body: str, region: str,
                      policy: PollPolicy) -> StackUpsertResult:
        stack_name = stack.stack_name
        if not stack.status.is_terminal:
            # A previous run may have left an operation in flight.
            logger.info(f"Stack {stack_name} is {stack.status.value}, waiting before update")
            stack = self._settle_stack(stack_name, region, policy)

        if stack.status.is_failed and stack.status not in UPDATABLE_FAILED_STACK_STATUSES:
            raise StackFailedError(stack_name, stack.status.value,
                                   stack.status_reason or "stack cannot be updated")

        name = change_set_name(stack_name, self._now())
        created = self.connector.create_change_set(stack_name, name, template_body, region,
                                                   REQUIRED_CAPABILITIES)
        if not created.success:
            raise StackOperationError(f"Failed to create change set {name}: {created.error}")
        logger.info(f"Created change set {name} for {stack_name}")

        change_set = self.wait_for_change_set(stack_name, name, region, policy)
        classification = change_set.status.classification

        if classification == StatusClass.EMPTY:
            logger.info(f"Stack {stack_name} is up to date, change set {name} has no changes")
            return StackUpsertResult(stack_id=stack.stack_id, outcome=RoleOutcome.UNCHANGED,
                                     change_set_name=name)

        if classification != StatusClass.READY:
            raise ChangeSetFailedError(name, change_set.status.value, change_set.status_reason)

        executed = self.connector.execute_change_set(stack_name, name, region)
        if not executed.success:
            raise StackOperationError(f"Failed to execute change set {name}: {executed.error}")
        logger.info(f"Executing change set {name} on {stack_name}")

        updated = self.wait_for_stack(stack_name, region, policy)
        logger.info(f"Stack {stack_name} updated: {updated.status.value}")
        return StackUpsertResult(stack_id=stack.stack_id, outcome=RoleOutcome.UPDATED,
                                 change_set_name=name)

    def wait_for_stack(self, stack_name: str, region: str, policy: PollPolicy) -> StackInfo:
        """Poll a stack until it settles; failed terminal statuses raise StackFailedError."""
        stack = self._settle_stack(stack_name, region, policy)
        if stack.status.is_failed:
            logger.error(f"Stack {stack_name} failed: {stack.status.value} {stack.status_reason or ''}")
            raise StackFailedError(stack_name, stack.status.value, stack.status_reason)
        return stack

    def _settle_stack(self, stack_name: str, region: str, policy: PollPolicy) -> StackInfo:
        """Poll a stack until its status is terminal, whether failed or not."""
        def fetch() -> StackInfo:
            result = self.connector.get_stack(stack_name, region)
            if not result.success:
                raise StackOperationError(
                    f"Failed to describe stack {stack_name}: {result.error or result.message}"
                )
            return result.data

        try:
            stack = poll_until(fetch, lambda s: s.status.is_terminal, policy,
                               description=f"stack {stack_name}", **self._poll_kwargs)
        except PollTimeout as e:
            last = e.last_value.status.value if e.last_value else None
            raise StackTimeoutError(
                f"Stack {stack_name} did not settle within {policy.timeout:.0f}s "
                f"(last status {last})", last_status=last,
            ) from e
        return stack

    def wait_for_change_set(self, stack_name: str, name: str, region: str,
                            policy: PollPolicy) -> ChangeSetInfo:
        """Poll a change set until it is ready, empty or failed."""
        def fetch() -> ChangeSetInfo:
            result = self.connector.get_change_set(stack_name, name, region)
            if not result.success:
                raise StackOperationError(
                    f"Failed to describe change set {name}: {result.error or result.message}"
                )
            return result.data

        try:
            return poll_until(fetch, lambda c: c.status.is_terminal, policy,
                              description=f"change set {name}", **self._poll_kwargs)
        except PollTimeout as e:
            last = e.last_value.status.value if e.last_value else None
            raise ChangeSetTimeoutError(
                f"Change set {name} did not settle within {policy.timeout:.0f}s "
                f"(last status {last})", last_status=last,
            ) from e

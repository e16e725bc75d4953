"""
Exception hierarchy for the IAM Reconciler.

Every fatal condition raised by the engine derives from ReconcileError so the
CLI can stop the run at the first failure and report where it happened.
"""

from typing import Optional


class ReconcileError(Exception):
    """Base class for all reconciliation failures."""


class ValidationError(ReconcileError):
    """A template, document or definition is malformed. Nothing was mutated."""


class TemplateInvalidError(ValidationError):
    """The backend rejected a stack template."""


class PolicyDocumentInvalidError(ValidationError):
    """A managed policy document is not valid JSON."""


class DefinitionError(ValidationError):
    """The account/role definition tree is incomplete or inconsistent."""


class CredentialError(ReconcileError):
    """Credential or authorization failure."""


class RoleSwitchError(CredentialError):
    """Assuming the enacting role returned no credentials."""

    def __init__(self, role_arn: str, detail: Optional[str] = None):
        message = (
            f"Unable to assume {role_arn}: current identity lacks permission to assume, "
            "or target role forbids it"
        )
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.role_arn = role_arn


class NoIdentityError(CredentialError):
    """No valid session is available."""


class PollTimeoutError(ReconcileError):
    """A polling budget was exhausted before a terminal status was reached."""

    def __init__(self, message: str, last_status: Optional[str] = None):
        super().__init__(message)
        self.last_status = last_status


class StackTimeoutError(PollTimeoutError):
    """The stack did not reach a terminal status in time."""


class ChangeSetTimeoutError(PollTimeoutError):
    """The change set did not reach a terminal status in time."""


class BackendFailure(ReconcileError):
    """The backend reported a terminal failure for an operation."""

    def __init__(self, name: str, status: str, reason: Optional[str] = None):
        message = f"{name} ended in {status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.name = name
        self.status = status
        self.reason = reason


class StackFailedError(BackendFailure):
    """A stack reached a failed or rolled back terminal status."""


class ChangeSetFailedError(BackendFailure):
    """A change set reached a terminal status other than ready or empty."""


class BackendError(ReconcileError):
    """An unexpected fault from a remote call."""


class PolicyUpdateError(BackendError):
    """Creating or versioning a managed policy failed."""


class RoleCleanupError(BackendError):
    """Looking up or tearing down an orphaned role failed."""


class StackOperationError(BackendError):
    """A stack or change set call failed outright."""


class ReconcileAbortedError(ReconcileError):
    """The run stopped at the first fatal error."""

    def __init__(self, account: str, role: Optional[str], cause: Exception):
        where = f"account {account}" + (f", role {role}" if role else "")
        super().__init__(f"Reconciliation aborted in {where}: {cause}")
        self.account = account
        self.role = role
        self.cause = cause

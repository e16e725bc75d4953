"""
Core data models for the IAM Reconciler.

This module defines the Pydantic models used throughout the system
for account and role definitions, credentials, backend status codes
and reconciliation results.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusClass(str, Enum):
    """Coarse classification of a backend status code."""
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    READY = "READY"
    EMPTY = "EMPTY"


class StackStatus(str, Enum):
    """Stack status codes reported by the orchestration backend."""
    CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    CREATE_FAILED = "CREATE_FAILED"
    ROLLBACK_IN_PROGRESS = "ROLLBACK_IN_PROGRESS"
    ROLLBACK_COMPLETE = "ROLLBACK_COMPLETE"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_COMPLETE = "DELETE_COMPLETE"
    DELETE_FAILED = "DELETE_FAILED"
    UPDATE_IN_PROGRESS = "UPDATE_IN_PROGRESS"
    UPDATE_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_COMPLETE = "UPDATE_COMPLETE"
    UPDATE_FAILED = "UPDATE_FAILED"
    UPDATE_ROLLBACK_IN_PROGRESS = "UPDATE_ROLLBACK_IN_PROGRESS"
    UPDATE_ROLLBACK_FAILED = "UPDATE_ROLLBACK_FAILED"
    UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_ROLLBACK_COMPLETE = "UPDATE_ROLLBACK_COMPLETE"
    REVIEW_IN_PROGRESS = "REVIEW_IN_PROGRESS"
    IMPORT_IN_PROGRESS = "IMPORT_IN_PROGRESS"
    IMPORT_COMPLETE = "IMPORT_COMPLETE"
    IMPORT_ROLLBACK_IN_PROGRESS = "IMPORT_ROLLBACK_IN_PROGRESS"
    IMPORT_ROLLBACK_FAILED = "IMPORT_ROLLBACK_FAILED"
    IMPORT_ROLLBACK_COMPLETE = "IMPORT_ROLLBACK_COMPLETE"

    @property
    def classification(self) -> StatusClass:
        return _STACK_STATUS_CLASSES.get(self, StatusClass.IN_PROGRESS)

    @property
    def is_terminal(self) -> bool:
        return self.classification != StatusClass.IN_PROGRESS

    @property
    def is_failed(self) -> bool:
        return self.classification == StatusClass.FAILED


_STACK_STATUS_CLASSES = {
    StackStatus.CREATE_COMPLETE: StatusClass.SUCCEEDED,
    StackStatus.UPDATE_COMPLETE: StatusClass.SUCCEEDED,
    StackStatus.IMPORT_COMPLETE: StatusClass.SUCCEEDED,
    StackStatus.CREATE_FAILED: StatusClass.FAILED,
    StackStatus.ROLLBACK_COMPLETE: StatusClass.FAILED,
    StackStatus.ROLLBACK_FAILED: StatusClass.FAILED,
    StackStatus.DELETE_COMPLETE: StatusClass.FAILED,
    StackStatus.DELETE_FAILED: StatusClass.FAILED,
    StackStatus.UPDATE_FAILED: StatusClass.FAILED,
    StackStatus.UPDATE_ROLLBACK_FAILED: StatusClass.FAILED,
    StackStatus.UPDATE_ROLLBACK_COMPLETE: StatusClass.FAILED,
    StackStatus.IMPORT_ROLLBACK_FAILED: StatusClass.FAILED,
    StackStatus.IMPORT_ROLLBACK_COMPLETE: StatusClass.FAILED,
}

# Failed terminal states a stack can still be updated from.
UPDATABLE_FAILED_STACK_STATUSES = frozenset({
    StackStatus.UPDATE_ROLLBACK_COMPLETE,
})


class ChangeSetStatus(str, Enum):
    """Change set states, with EMPTY standing for a no-op diff."""
    CREATE_PENDING = "CREATE_PENDING"
    CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    DELETE_PENDING = "DELETE_PENDING"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_COMPLETE = "DELETE_COMPLETE"
    DELETE_FAILED = "DELETE_FAILED"
    FAILED = "FAILED"
    EMPTY = "EMPTY"

    @property
    def classification(self) -> StatusClass:
        return _CHANGE_SET_STATUS_CLASSES.get(self, StatusClass.IN_PROGRESS)

    @property
    def is_terminal(self) -> bool:
        return self.classification != StatusClass.IN_PROGRESS


_CHANGE_SET_STATUS_CLASSES = {
    ChangeSetStatus.CREATE_COMPLETE: StatusClass.READY,
    ChangeSetStatus.EMPTY: StatusClass.EMPTY,
    ChangeSetStatus.FAILED: StatusClass.FAILED,
    ChangeSetStatus.DELETE_COMPLETE: StatusClass.FAILED,
    ChangeSetStatus.DELETE_FAILED: StatusClass.FAILED,
}


class RoleOutcome(str, Enum):
    """What happened to a role's backing stack during reconciliation."""
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class PolicyAction(str, Enum):
    """What happened to a managed policy during reconciliation."""
    CREATED = "created"
    UPDATED = "updated"


class AccountDefinition(BaseModel):
    """An account to reconcile and the role used to act inside it."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Account folder name")
    account_id: str = Field(..., description="12 digit account identifier")
    region: str = Field("us-east-1", description="Default region for remote calls")
    enacting_role: str = Field(..., description="Role name or ARN assumed before mutating the account")

    @field_validator("account_id", mode="before")
    @classmethod
    def validate_account_id(cls, v: Any) -> str:
        v = str(v).strip()
        if not v.isdigit() or len(v) != 12:
            raise ValueError(f"Invalid account id: {v!r}")
        return v

    @property
    def enacting_role_arn(self) -> str:
        if self.enacting_role.startswith("arn:"):
            return self.enacting_role
        return f"arn:aws:iam::{self.account_id}:role/{self.enacting_role}"


class PolicyDefinition(BaseModel):
    """A managed policy document owned by a role."""
    model_config = ConfigDict(frozen=True)

    policy_name: str
    document_body: str
    account_id: str

    @property
    def arn(self) -> str:
        return policy_arn(self.account_id, self.policy_name)


class RoleDefinition(BaseModel):
    """
    A role folder: the stack template that creates the role and its managed policy.

    The stack, the role and the policy share one name; lookups depend on it.
    """
    model_config = ConfigDict(frozen=True)

    role_name: str
    stack_name: str
    template_body: str
    policy: PolicyDefinition

    @model_validator(mode="before")
    @classmethod
    def default_stack_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("stack_name") is None:
            data = dict(data, stack_name=data.get("role_name"))
        return data

    @model_validator(mode="after")
    def check_naming(self) -> "RoleDefinition":
        if self.stack_name != self.role_name:
            raise ValueError(
                f"Stack name {self.stack_name!r} must equal role name {self.role_name!r}"
            )
        if self.policy.policy_name != self.role_name:
            raise ValueError(
                f"Policy name {self.policy.policy_name!r} must equal role name {self.role_name!r}"
            )
        return self

    @property
    def policy_name(self) -> str:
        return self.policy.policy_name


class CredentialContext(BaseModel):
    """Temporary credentials for the currently assumed role."""
    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None
    expiration: Optional[datetime] = None
    assumed_role_arn: Optional[str] = None
    region: str = "us-east-1"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expiration is None:
            return False
        now = now or _utcnow()
        expiration = self.expiration
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        return expiration <= now


class Identity(BaseModel):
    """Caller identity reported by the identity capability."""
    account: str
    arn: str
    user_id: Optional[str] = None


class PolicyVersion(BaseModel):
    version_id: str
    is_default: bool = False
    create_date: Optional[datetime] = None


class PolicyInfo(BaseModel):
    arn: str
    policy_name: str
    default_version_id: str


class StackInfo(BaseModel):
    stack_id: str
    stack_name: str
    status: StackStatus
    status_reason: Optional[str] = None


class ChangeSetInfo(BaseModel):
    change_set_name: str
    stack_name: str
    status: ChangeSetStatus
    status_reason: Optional[str] = None
    change_set_id: Optional[str] = None


class PolicyUpsertResult(BaseModel):
    policy_arn: str
    action: PolicyAction
    default_version_id: str
    previous_version_id: Optional[str] = None
    pruned_versions: List[str] = Field(default_factory=list)
    prune_failures: List[str] = Field(default_factory=list)


class StackUpsertResult(BaseModel):
    stack_id: str
    outcome: RoleOutcome
    change_set_name: Optional[str] = None


class RoleResult(BaseModel):
    """Per-role outcome for a reconciliation run."""
    role_name: str
    stack_id: str
    outcome: RoleOutcome
    policy_action: PolicyAction
    orphan_removed: bool = False


class ReconcileSummary(BaseModel):
    """Result of reconciling one account."""
    account: str
    account_id: str
    workflow_id: str
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    roles: List[RoleResult] = Field(default_factory=list)
    actions_taken: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        counts = {outcome.value: 0 for outcome in RoleOutcome}
        for role in self.roles:
            counts[role.outcome.value] += 1
        return counts


class AuditRecord(BaseModel):
    """Audit record for every remote mutation attempted by a workflow."""
    id: str = Field(..., description="Unique audit record ID")
    timestamp: datetime = Field(default_factory=_utcnow)
    workflow_id: Optional[str] = Field(None, description="ID of the workflow that triggered this")
    account: str = Field(..., description="Account name")
    role: Optional[str] = Field(None, description="Role being reconciled, if any")
    action: str = Field(..., description="Operation performed")
    resource: str = Field(..., description="Resource affected")
    success: bool = Field(..., description="Whether the action succeeded")
    error_message: Optional[str] = Field(None, description="Error details if failed")
    metadata: Dict[str, Any] = Field(default_factory=dict)


def policy_arn(account_id: str, policy_name: str) -> str:
    return f"arn:aws:iam::{account_id}:policy/{policy_name}"


def role_arn(account_id: str, role_name: str) -> str:
    return f"arn:aws:iam::{account_id}:role/{role_name}"

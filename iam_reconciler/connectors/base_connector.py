"""
Base Connector Classes for the IAM Reconciler.

This module provides the capability interface the reconciliation engine
calls (identity, stack orchestration, IAM roles and managed policies),
with both a real API implementation and a mock/simulated backend.
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ..models import (
    ChangeSetInfo,
    ChangeSetStatus,
    CredentialContext,
    Identity,
    PolicyInfo,
    PolicyVersion,
    StackInfo,
    StackStatus,
    policy_arn,
)

logger = logging.getLogger(__name__)

NO_CHANGES_REASON = (
    "The submitted information didn't contain changes. "
    "Submit different information to create a change set."
)


class ConnectorResult:
    """Result of a connector operation."""

    def __init__(self, success: bool, message: str = "", data: Optional[Any] = None,
                 error: Optional[str] = None, not_found: bool = False):
        self.success = success
        self.message = message
        self.data = data
        self.error = error
        self.not_found = not_found

    def __bool__(self):
        return self.success

    def __str__(self):
        return f"{'✓' if self.success else '✗'} {self.message}"


class BaseConnector(ABC):
    """
    Abstract base class for provisioning backends.

    A connector carries the credentials of the currently assumed role. Only
    the credential manager changes them, through set_credentials() and
    clear_credentials().
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, mock_mode: bool = False):
        """
        Initialize the connector.

        Args:
            config: Configuration dictionary with base credentials, region, etc.
            mock_mode: If True, use mock/simulated backend instead of real APIs
        """
        self.config = config or {}
        self.mock_mode = mock_mode
        self.credentials: Optional[CredentialContext] = None

        logger.info(f"Initialized {self.__class__.__name__} (mock_mode={mock_mode})")

    def set_credentials(self, credentials: CredentialContext):
        """Route every subsequent call through the given temporary credentials."""
        self.credentials = credentials

    def clear_credentials(self) -> ConnectorResult:
        """Drop the assumed-role credentials and fall back to the base identity."""
        self.credentials = None
        return ConnectorResult(True, "Cleared credentials")

    # Identity capability

    @abstractmethod
    def assume_role(self, role_arn: str, session_name: str, region: str,
                    duration_seconds: int = 3600) -> ConnectorResult:
        """
        Assume a role with the current identity.

        Returns:
            ConnectorResult whose data is a CredentialContext, or None when the
            backend returned no credentials
        """
        pass

    @abstractmethod
    def get_caller_identity(self, region: str) -> ConnectorResult:
        """
        Get the identity the connector currently acts as.

        Returns:
            ConnectorResult whose data is an Identity
        """
        pass

    # Stack orchestration capability

    @abstractmethod
    def validate_template(self, template_body: str, region: str) -> ConnectorResult:
        """Validate a stack template without creating anything."""
        pass

    @abstractmethod
    def get_stack(self, stack_name: str, region: str) -> ConnectorResult:
        """
        Look up a stack by name.

        Returns:
            ConnectorResult with StackInfo data, or not_found set when absent
        """
        pass

    @abstractmethod
    def create_stack(self, stack_name: str, template_body: str, region: str,
                     capabilities: List[str]) -> ConnectorResult:
        """Create a stack. The data is the new stack id."""
        pass

    @abstractmethod
    def create_change_set(self, stack_name: str, change_set_name: str, template_body: str,
                          region: str, capabilities: List[str]) -> ConnectorResult:
        """Create a change set against an existing stack."""
        pass

    @abstractmethod
    def get_change_set(self, stack_name: str, change_set_name: str,
                       region: str) -> ConnectorResult:
        """
        Describe a change set.

        Returns:
            ConnectorResult with ChangeSetInfo data. A change set with nothing to
            apply is reported with status EMPTY.
        """
        pass

    @abstractmethod
    def execute_change_set(self, stack_name: str, change_set_name: str,
                           region: str) -> ConnectorResult:
        """Start applying a ready change set."""
        pass

    # Identity object capability

    @abstractmethod
    def get_role(self, role_name: str) -> ConnectorResult:
        """Look up a role; not_found is set when it does not exist."""
        pass

    @abstractmethod
    def delete_role(self, role_name: str) -> ConnectorResult:
        pass

    @abstractmethod
    def list_attached_role_policies(self, role_name: str) -> ConnectorResult:
        """List the ARNs of managed policies attached to a role."""
        pass

    @abstractmethod
    def detach_role_policy(self, role_name: str, policy_arn: str) -> ConnectorResult:
        pass

    @abstractmethod
    def list_role_policies(self, role_name: str) -> ConnectorResult:
        """List the names of a role's inline policies."""
        pass

    @abstractmethod
    def delete_role_policy(self, role_name: str, policy_name: str) -> ConnectorResult:
        pass

    @abstractmethod
    def list_instance_profiles_for_role(self, role_name: str) -> ConnectorResult:
        """List the names of instance profiles containing a role."""
        pass

    @abstractmethod
    def remove_role_from_instance_profile(self, role_name: str,
                                          instance_profile_name: str) -> ConnectorResult:
        pass

    # Managed policy capability

    @abstractmethod
    def get_policy(self, policy_arn: str) -> ConnectorResult:
        """
        Look up a managed policy.

        Returns:
            ConnectorResult with PolicyInfo data, or not_found set when absent
        """
        pass

    @abstractmethod
    def create_policy(self, policy_name: str, document_body: str) -> ConnectorResult:
        """Create a managed policy; its first version becomes the default."""
        pass

    @abstractmethod
    def create_policy_version(self, policy_arn: str, document_body: str,
                              set_as_default: bool = True) -> ConnectorResult:
        """Create a new policy version. The data is the new version id."""
        pass

    @abstractmethod
    def list_policy_versions(self, policy_arn: str) -> ConnectorResult:
        """List a policy's versions as PolicyVersion objects."""
        pass

    @abstractmethod
    def delete_policy_version(self, policy_arn: str, version_id: str) -> ConnectorResult:
        pass


class MockAccountState:
    """In-memory objects of one simulated account."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        self.stacks: Dict[str, Dict[str, Any]] = {}
        self.change_sets: Dict[str, Dict[str, Any]] = {}
        self.roles: Dict[str, Dict[str, Any]] = {}
        self.policies: Dict[str, Dict[str, Any]] = {}


class MockConnector(BaseConnector):
    """
    Mock provisioning backend.

    Keeps stacks, change sets, roles and managed policies in memory, per
    account, so reconciliation can run end to end without real API access.
    Creating a stack creates the IAM roles its template declares.

    Config keys:
        base_account_id: account of the identity used before any assume-role
        base_identity: set to None to simulate a missing session
        forbidden_roles: role ARNs assume_role refuses
        pending_polls: number of describe calls a stack or change set stays
                       in progress before completing
        max_policy_versions: backend cap on versions per policy
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, mock_mode: bool = True):
        super().__init__(config, mock_mode=True)

        self.base_account_id = str(self.config.get("base_account_id", "000000000000"))
        self.base_identity = self.config.get(
            "base_identity", f"arn:aws:iam::{self.base_account_id}:user/operator"
        )
        self.forbidden_roles = set(self.config.get("forbidden_roles", []))
        self.pending_polls = int(self.config.get("pending_polls", 0))
        self.max_policy_versions = int(self.config.get("max_policy_versions", 5))

        self.accounts: Dict[str, MockAccountState] = {}
        self.failures: Dict[str, str] = {}
        self.calls: List[str] = []

    # Helpers

    @property
    def current_account_id(self) -> str:
        if self.credentials and self.credentials.assumed_role_arn:
            return self.credentials.assumed_role_arn.split(":")[4]
        return self.base_account_id

    def account(self, account_id: Optional[str] = None) -> MockAccountState:
        """Get (creating if needed) the state of an account, default the current one."""
        account_id = account_id or self.current_account_id
        if account_id not in self.accounts:
            self.accounts[account_id] = MockAccountState(account_id)
        return self.accounts[account_id]

    def _record(self, operation: str) -> Optional[ConnectorResult]:
        self.calls.append(operation)
        if operation in self.failures:
            error = self.failures[operation]
            logger.info(f"Mock injected failure for {operation}: {error}")
            return ConnectorResult(False, f"{operation} failed", error=error)
        return None

    def call_count(self, operation: str) -> int:
        return self.calls.count(operation)

    def add_role(self, role_name: str, attached_policies: Optional[List[str]] = None,
                 inline_policies: Optional[List[str]] = None,
                 instance_profiles: Optional[List[str]] = None,
                 account_id: Optional[str] = None) -> Dict[str, Any]:
        """Seed a role created outside any stack."""
        role = {
            "role_name": role_name,
            "arn": f"arn:aws:iam::{account_id or self.current_account_id}:role/{role_name}",
            "attached_policies": list(attached_policies or []),
            "inline_policies": {name: "{}" for name in inline_policies or []},
            "instance_profiles": list(instance_profiles or []),
        }
        self.account(account_id).roles[role_name] = role
        return role

    @staticmethod
    def _parse_template(template_body: str) -> Dict[str, Any]:
        return json.loads(template_body)

    @staticmethod
    def _declared_roles(stack_name: str, template: Dict[str, Any]) -> Dict[str, List[str]]:
        roles = {}
        for logical_id, resource in template.get("Resources", {}).items():
            if resource.get("Type") != "AWS::IAM::Role":
                continue
            properties = resource.get("Properties", {})
            role_name = properties.get("RoleName") or f"{stack_name}-{logical_id}"
            managed = [arn for arn in properties.get("ManagedPolicyArns", []) if isinstance(arn, str)]
            roles[role_name] = managed
        return roles

    def _apply_template(self, state: MockAccountState, stack: Dict[str, Any],
                        template: Dict[str, Any]):
        declared = self._declared_roles(stack["stack_name"], template)
        for role_name in stack["roles"]:
            if role_name not in declared:
                state.roles.pop(role_name, None)
        for role_name, managed in declared.items():
            role = state.roles.get(role_name) or self.add_role(role_name, account_id=state.account_id)
            role["attached_policies"] = list(managed)
        stack["roles"] = list(declared)

    @staticmethod
    def _advance(record: Dict[str, Any], status_key: str):
        """Move a record from its in-progress status to its final one."""
        if record["pending"] > 0:
            record["pending"] -= 1
            return
        if "final_status" in record:
            record[status_key] = record.pop("final_status")

    # Identity capability

    def assume_role(self, role_arn: str, session_name: str, region: str,
                    duration_seconds: int = 3600) -> ConnectorResult:
        failure = self._record("assume_role")
        if failure:
            return failure
        if role_arn in self.forbidden_roles:
            logger.info(f"Mock refused to assume {role_arn}")
            return ConnectorResult(False, f"Access denied for {role_arn}", data=None)

        context = CredentialContext(
            access_key_id=f"ASIA{uuid.uuid4().hex[:16].upper()}",
            secret_access_key=uuid.uuid4().hex,
            session_token=uuid.uuid4().hex,
            expiration=datetime.now(timezone.utc) + timedelta(seconds=duration_seconds),
            assumed_role_arn=role_arn,
            region=region,
        )
        return ConnectorResult(True, f"Assumed {role_arn}", context)

    def get_caller_identity(self, region: str) -> ConnectorResult:
        failure = self._record("get_caller_identity")
        if failure:
            return failure
        if self.credentials:
            role_name = self.credentials.assumed_role_arn.split("/")[-1]
            identity = Identity(
                account=self.current_account_id,
                arn=f"arn:aws:sts::{self.current_account_id}:assumed-role/{role_name}/session",
                user_id=self.credentials.access_key_id,
            )
            return ConnectorResult(True, "Assumed role identity", identity)
        if not self.base_identity:
            return ConnectorResult(False, "No credentials available", error="NoCredentials")
        identity = Identity(account=self.base_account_id, arn=self.base_identity, user_id="AIDAMOCK")
        return ConnectorResult(True, "Base identity", identity)

    # Stack orchestration capability

    def validate_template(self, template_body: str, region: str) -> ConnectorResult:
        failure = self._record("validate_template")
        if failure:
            return failure
        try:
            template = self._parse_template(template_body)
        except ValueError as e:
            return ConnectorResult(False, "Template is not valid JSON", error=str(e))
        if not isinstance(template, dict) or not template.get("Resources"):
            return ConnectorResult(
                False, "Template format error",
                error="Template format error: At least one Resources member must be defined.",
            )
        return ConnectorResult(True, "Template is valid")

    def get_stack(self, stack_name: str, region: str) -> ConnectorResult:
        failure = self._record("get_stack")
        if failure:
            return failure
        stack = self.account().stacks.get(stack_name)
        if stack is None:
            return ConnectorResult(False, f"Stack {stack_name} does not exist", not_found=True)
        self._advance(stack, "status")
        info = StackInfo(
            stack_id=stack["stack_id"],
            stack_name=stack_name,
            status=stack["status"],
            status_reason=stack.get("status_reason"),
        )
        return ConnectorResult(True, f"Found stack {stack_name}", info)

    def create_stack(self, stack_name: str, template_body: str, region: str,
                     capabilities: List[str]) -> ConnectorResult:
        failure = self._record("create_stack")
        if failure:
            return failure
        state = self.account()
        if stack_name in state.stacks:
            return ConnectorResult(False, f"Stack {stack_name} already exists",
                                   error="AlreadyExistsException")
        template = self._parse_template(template_body)
        if self._declared_roles(stack_name, template) and "CAPABILITY_NAMED_IAM" not in capabilities:
            return ConnectorResult(False, "Requires capabilities", error="InsufficientCapabilities")

        stack_id = (f"arn:aws:cloudformation:{region}:{state.account_id}:"
                    f"stack/{stack_name}/{uuid.uuid4()}")
        stack = {
            "stack_id": stack_id,
            "stack_name": stack_name,
            "template": template,
            "roles": [],
            "status": StackStatus.CREATE_IN_PROGRESS,
            "pending": self.pending_polls,
        }
        collisions = [name for name in self._declared_roles(stack_name, template) if name in state.roles]
        if collisions:
            stack["final_status"] = StackStatus.ROLLBACK_COMPLETE
            stack["status_reason"] = f"{collisions[0]} already exists"
        else:
            self._apply_template(state, stack, template)
            stack["final_status"] = StackStatus.CREATE_COMPLETE
        state.stacks[stack_name] = stack
        logger.info(f"Mock created stack {stack_name}")
        return ConnectorResult(True, f"Creating stack {stack_name}", stack_id)

    def create_change_set(self, stack_name: str, change_set_name: str, template_body: str,
                          region: str, capabilities: List[str]) -> ConnectorResult:
        failure = self._record("create_change_set")
        if failure:
            return failure
        state = self.account()
        stack = state.stacks.get(stack_name)
        if stack is None:
            return ConnectorResult(False, f"Stack {stack_name} does not exist",
                                   error="ValidationError")
        if change_set_name in state.change_sets:
            return ConnectorResult(False, f"Change set {change_set_name} already exists",
                                   error="AlreadyExistsException")
        template = self._parse_template(template_body)
        change_set = {
            "change_set_name": change_set_name,
            "change_set_id": f"{stack['stack_id']}/changeSet/{change_set_name}",
            "stack_name": stack_name,
            "template": template,
            "status": ChangeSetStatus.CREATE_PENDING,
            "pending": self.pending_polls,
        }
        if template == stack["template"]:
            change_set["final_status"] = ChangeSetStatus.EMPTY
            change_set["status_reason"] = NO_CHANGES_REASON
        else:
            change_set["final_status"] = ChangeSetStatus.CREATE_COMPLETE
        state.change_sets[change_set_name] = change_set
        return ConnectorResult(True, f"Creating change set {change_set_name}",
                               change_set["change_set_id"])

    def get_change_set(self, stack_name: str, change_set_name: str,
                       region: str) -> ConnectorResult:
        failure = self._record("get_change_set")
        if failure:
            return failure
        change_set = self.account().change_sets.get(change_set_name)
        if change_set is None or change_set["stack_name"] != stack_name:
            return ConnectorResult(False, f"Change set {change_set_name} does not exist",
                                   not_found=True)
        self._advance(change_set, "status")
        info = ChangeSetInfo(
            change_set_name=change_set_name,
            stack_name=stack_name,
            status=change_set["status"],
            status_reason=change_set.get("status_reason"),
            change_set_id=change_set["change_set_id"],
        )
        return ConnectorResult(True, f"Found change set {change_set_name}", info)

    def execute_change_set(self, stack_name: str, change_set_name: str,
                           region: str) -> ConnectorResult:
        failure = self._record("execute_change_set")
        if failure:
            return failure
        state = self.account()
        change_set = state.change_sets.get(change_set_name)
        if change_set is None or change_set["status"] != ChangeSetStatus.CREATE_COMPLETE:
            return ConnectorResult(False, f"Change set {change_set_name} is not executable",
                                   error="InvalidChangeSetStatus")
        stack = state.stacks[stack_name]
        self._apply_template(state, stack, change_set["template"])
        stack["template"] = change_set["template"]
        stack["status"] = StackStatus.UPDATE_IN_PROGRESS
        stack["final_status"] = StackStatus.UPDATE_COMPLETE
        stack["pending"] = self.pending_polls
        change_set["status"] = ChangeSetStatus.DELETE_COMPLETE
        logger.info(f"Mock executed change set {change_set_name}")
        return ConnectorResult(True, f"Executing change set {change_set_name}")

    # Identity object capability

    def _role_or_missing(self, role_name: str):
        role = self.account().roles.get(role_name)
        if role is None:
            return None, ConnectorResult(False, f"Role {role_name} not found", not_found=True)
        return role, None

    def get_role(self, role_name: str) -> ConnectorResult:
        failure = self._record("get_role")
        if failure:
            return failure
        role, missing = self._role_or_missing(role_name)
        if missing:
            return missing
        return ConnectorResult(True, f"Found role {role_name}", {"RoleName": role_name, "Arn": role["arn"]})

    def delete_role(self, role_name: str) -> ConnectorResult:
        failure = self._record("delete_role")
        if failure:
            return failure
        role, missing = self._role_or_missing(role_name)
        if missing:
            return missing
        if role["attached_policies"] or role["inline_policies"] or role["instance_profiles"]:
            return ConnectorResult(False, f"Role {role_name} still has attachments",
                                   error="DeleteConflict")
        del self.account().roles[role_name]
        logger.info(f"Mock deleted role {role_name}")
        return ConnectorResult(True, f"Deleted role {role_name}")

    def list_attached_role_policies(self, role_name: str) -> ConnectorResult:
        failure = self._record("list_attached_role_policies")
        if failure:
            return failure
        role, missing = self._role_or_missing(role_name)
        if missing:
            return missing
        return ConnectorResult(True, "Attached policies", list(role["attached_policies"]))

    def detach_role_policy(self, role_name: str, policy_arn: str) -> ConnectorResult:
        failure = self._record("detach_role_policy")
        if failure:
            return failure
        role, missing = self._role_or_missing(role_name)
        if missing:
            return missing
        if policy_arn in role["attached_policies"]:
            role["attached_policies"].remove(policy_arn)
        return ConnectorResult(True, f"Detached {policy_arn} from {role_name}")

    def list_role_policies(self, role_name: str) -> ConnectorResult:
        failure = self._record("list_role_policies")
        if failure:
            return failure
        role, missing = self._role_or_missing(role_name)
        if missing:
            return missing
        return ConnectorResult(True, "Inline policies", list(role["inline_policies"]))

    def delete_role_policy(self, role_name: str, policy_name: str) -> ConnectorResult:
        failure = self._record("delete_role_policy")
        if failure:
            return failure
        role, missing = self._role_or_missing(role_name)
        if missing:
            return missing
        role["inline_policies"].pop(policy_name, None)
        return ConnectorResult(True, f"Deleted inline policy {policy_name} from {role_name}")

    def list_instance_profiles_for_role(self, role_name: str) -> ConnectorResult:
        failure = self._record("list_instance_profiles_for_role")
        if failure:
            return failure
        role, missing = self._role_or_missing(role_name)
        if missing:
            return missing
        return ConnectorResult(True, "Instance profiles", list(role["instance_profiles"]))

    def remove_role_from_instance_profile(self, role_name: str,
                                          instance_profile_name: str) -> ConnectorResult:
        failure = self._record("remove_role_from_instance_profile")
        if failure:
            return failure
        role, missing = self._role_or_missing(role_name)
        if missing:
            return missing
        if instance_profile_name in role["instance_profiles"]:
            role["instance_profiles"].remove(instance_profile_name)
        return ConnectorResult(True, f"Removed {role_name} from {instance_profile_name}")

    # Managed policy capability

    def get_policy(self, policy_arn: str) -> ConnectorResult:
        failure = self._record("get_policy")
        if failure:
            return failure
        policy = self.account().policies.get(policy_arn)
        if policy is None:
            return ConnectorResult(False, f"Policy {policy_arn} not found", not_found=True)
        default = next(v for v in policy["versions"] if v["is_default"])
        info = PolicyInfo(arn=policy_arn, policy_name=policy["policy_name"],
                          default_version_id=default["version_id"])
        return ConnectorResult(True, f"Found policy {policy_arn}", info)

    def create_policy(self, policy_name: str, document_body: str) -> ConnectorResult:
        failure = self._record("create_policy")
        if failure:
            return failure
        state = self.account()
        arn = policy_arn(state.account_id, policy_name)
        if arn in state.policies:
            return ConnectorResult(False, f"Policy {policy_name} already exists",
                                   error="EntityAlreadyExists")
        state.policies[arn] = {
            "policy_name": policy_name,
            "next_version": 2,
            "versions": [{
                "version_id": "v1",
                "document": document_body,
                "is_default": True,
                "create_date": datetime.now(timezone.utc),
            }],
        }
        logger.info(f"Mock created policy {arn}")
        info = PolicyInfo(arn=arn, policy_name=policy_name, default_version_id="v1")
        return ConnectorResult(True, f"Created policy {policy_name}", info)

    def create_policy_version(self, policy_arn: str, document_body: str,
                              set_as_default: bool = True) -> ConnectorResult:
        failure = self._record("create_policy_version")
        if failure:
            return failure
        policy = self.account().policies.get(policy_arn)
        if policy is None:
            return ConnectorResult(False, f"Policy {policy_arn} not found", not_found=True)
        if len(policy["versions"]) >= self.max_policy_versions:
            return ConnectorResult(False, f"Policy {policy_arn} has too many versions",
                                   error="LimitExceeded")
        version_id = f"v{policy['next_version']}"
        policy["next_version"] += 1
        if set_as_default:
            for version in policy["versions"]:
                version["is_default"] = False
        policy["versions"].append({
            "version_id": version_id,
            "document": document_body,
            "is_default": set_as_default,
            "create_date": datetime.now(timezone.utc),
        })
        return ConnectorResult(True, f"Created {version_id} of {policy_arn}", version_id)

    def list_policy_versions(self, policy_arn: str) -> ConnectorResult:
        failure = self._record("list_policy_versions")
        if failure:
            return failure
        policy = self.account().policies.get(policy_arn)
        if policy is None:
            return ConnectorResult(False, f"Policy {policy_arn} not found", not_found=True)
        versions = [
            PolicyVersion(version_id=v["version_id"], is_default=v["is_default"],
                          create_date=v["create_date"])
            for v in policy["versions"]
        ]
        return ConnectorResult(True, f"Versions of {policy_arn}", versions)

    def delete_policy_version(self, policy_arn: str, version_id: str) -> ConnectorResult:
        failure = self._record("delete_policy_version")
        if failure:
            return failure
        policy = self.account().policies.get(policy_arn)
        if policy is None:
            return ConnectorResult(False, f"Policy {policy_arn} not found", not_found=True)
        for version in policy["versions"]:
            if version["version_id"] == version_id:
                if version["is_default"]:
                    return ConnectorResult(False, "Cannot delete the default version",
                                           error="DeleteConflict")
                policy["versions"].remove(version)
                return ConnectorResult(True, f"Deleted {version_id} of {policy_arn}")
        return ConnectorResult(False, f"Version {version_id} not found", not_found=True)

"""
AWS Connector for the IAM Reconciler.

Provides the reconciliation capabilities on top of AWS STS, CloudFormation
and IAM. Clients are built from the credentials of the currently assumed
role, or from the base configuration when none is held.
"""

import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..models import (
    ChangeSetInfo,
    ChangeSetStatus,
    CredentialContext,
    Identity,
    PolicyInfo,
    PolicyVersion,
    StackInfo,
    StackStatus,
)
from .base_connector import BaseConnector, ConnectorResult

logger = logging.getLogger(__name__)

# CloudFormation has no structured "empty diff" flag; these reasons mark it.
_NO_CHANGE_REASONS = (
    "didn't contain changes",
    "No updates are to be performed",
)


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def _is_missing_stack(error: ClientError) -> bool:
    return (
        _error_code(error) == "ValidationError"
        and "does not exist" in str(error)
    )


class AWSConnector(BaseConnector):
    """AWS connector for STS, CloudFormation and IAM."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, mock_mode: bool = False):
        super().__init__(config, mock_mode)
        self._clients: Dict[Any, Any] = {}
        self._session = self._base_session()

    def _base_session(self) -> boto3.Session:
        return boto3.Session(
            aws_access_key_id=self.config.get("aws_access_key_id"),
            aws_secret_access_key=self.config.get("aws_secret_access_key"),
            aws_session_token=self.config.get("aws_session_token"),
            profile_name=self.config.get("profile"),
            region_name=self.config.get("region", "us-east-1"),
        )

    def set_credentials(self, credentials: CredentialContext):
        super().set_credentials(credentials)
        self._clients = {}
        self._session = boto3.Session(
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            aws_session_token=credentials.session_token,
            region_name=credentials.region,
        )

    def clear_credentials(self) -> ConnectorResult:
        result = super().clear_credentials()
        self._clients = {}
        self._session = self._base_session()
        return result

    def _client(self, service: str, region: Optional[str] = None):
        key = (service, region)
        if key not in self._clients:
            self._clients[key] = self._session.client(service, region_name=region)
        return self._clients[key]

    @property
    def iam_client(self):
        return self._client("iam")

    def _failure(self, action: str, e: Exception) -> ConnectorResult:
        error_msg = f"Failed to {action}: {e}"
        logger.error(error_msg)
        return ConnectorResult(False, error_msg, error=str(e))

    # Identity capability

    def assume_role(self, role_arn: str, session_name: str, region: str,
                    duration_seconds: int = 3600) -> ConnectorResult:
        try:
            response = self._client("sts", region).assume_role(
                RoleArn=role_arn,
                RoleSessionName=session_name,
                DurationSeconds=duration_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            return self._failure(f"assume {role_arn}", e)

        credentials = response.get("Credentials")
        if not credentials:
            return ConnectorResult(False, f"No credentials returned for {role_arn}", data=None)

        context = CredentialContext(
            access_key_id=credentials["AccessKeyId"],
            secret_access_key=credentials["SecretAccessKey"],
            session_token=credentials.get("SessionToken"),
            expiration=credentials.get("Expiration"),
            assumed_role_arn=response.get("AssumedRoleUser", {}).get("Arn", role_arn),
            region=region,
        )
        logger.info(f"Assumed role {role_arn} as session {session_name}")
        return ConnectorResult(True, f"Assumed {role_arn}", context)

    def get_caller_identity(self, region: str) -> ConnectorResult:
        try:
            response = self._client("sts", region).get_caller_identity()
        except (ClientError, BotoCoreError) as e:
            return self._failure("get caller identity", e)

        identity = Identity(
            account=response["Account"],
            arn=response["Arn"],
            user_id=response.get("UserId"),
        )
        return ConnectorResult(True, f"Caller is {identity.arn}", identity)

    # Stack orchestration capability

    def validate_template(self, template_body: str, region: str) -> ConnectorResult:
        try:
            self._client("cloudformation", region).validate_template(TemplateBody=template_body)
            return ConnectorResult(True, "Template is valid")
        except ClientError as e:
            return ConnectorResult(False, "Template is invalid", error=str(e))
        except BotoCoreError as e:
            return self._failure("validate template", e)

    def get_stack(self, stack_name: str, region: str) -> ConnectorResult:
        try:
            response = self._client("cloudformation", region).describe_stacks(StackName=stack_name)
        except ClientError as e:
            if _is_missing_stack(e):
                return ConnectorResult(False, f"Stack {stack_name} does not exist", not_found=True)
            return self._failure(f"describe stack {stack_name}", e)
        except BotoCoreError as e:
            return self._failure(f"describe stack {stack_name}", e)

        stacks = response.get("Stacks", [])
        if not stacks:
            return ConnectorResult(False, f"Stack {stack_name} does not exist", not_found=True)
        stack = stacks[0]
        info = StackInfo(
            stack_id=stack["StackId"],
            stack_name=stack["StackName"],
            status=StackStatus(stack["StackStatus"]),
            status_reason=stack.get("StackStatusReason"),
        )
        logger.debug(f"Stack {stack_name} is {info.status.value}")
        return ConnectorResult(True, f"Found stack {stack_name}", info)

    def create_stack(self, stack_name: str, template_body: str, region: str,
                     capabilities: List[str]) -> ConnectorResult:
        try:
            response = self._client("cloudformation", region).create_stack(
                StackName=stack_name,
                TemplateBody=template_body,
                Capabilities=capabilities,
                Tags=[{"Key": "ManagedBy", "Value": "IAM-Reconciler"}],
            )
        except (ClientError, BotoCoreError) as e:
            return self._failure(f"create stack {stack_name}", e)

        logger.info(f"Creating stack {stack_name}: {response['StackId']}")
        return ConnectorResult(True, f"Creating stack {stack_name}", response["StackId"])

    def create_change_set(self, stack_name: str, change_set_name: str, template_body: str,
                          region: str, capabilities: List[str]) -> ConnectorResult:
        try:
            response = self._client("cloudformation", region).create_change_set(
                StackName=stack_name,
                ChangeSetName=change_set_name,
                TemplateBody=template_body,
                Capabilities=capabilities,
                ChangeSetType="UPDATE",
            )
        except (ClientError, BotoCoreError) as e:
            return self._failure(f"create change set {change_set_name}", e)

        return ConnectorResult(True, f"Creating change set {change_set_name}", response["Id"])

    def get_change_set(self, stack_name: str, change_set_name: str,
                       region: str) -> ConnectorResult:
        try:
            response = self._client("cloudformation", region).describe_change_set(
                StackName=stack_name, ChangeSetName=change_set_name
            )
        except ClientError as e:
            if _error_code(e) == "ChangeSetNotFound":
                return ConnectorResult(False, f"Change set {change_set_name} does not exist",
                                       not_found=True)
            return self._failure(f"describe change set {change_set_name}", e)
        except BotoCoreError as e:
            return self._failure(f"describe change set {change_set_name}", e)

        reason = response.get("StatusReason")
        status = ChangeSetStatus(response["Status"])
        if status == ChangeSetStatus.FAILED and not response.get("Changes") and reason and any(
            marker in reason for marker in _NO_CHANGE_REASONS
        ):
            status = ChangeSetStatus.EMPTY

        info = ChangeSetInfo(
            change_set_name=change_set_name,
            stack_name=stack_name,
            status=status,
            status_reason=reason,
            change_set_id=response.get("ChangeSetId"),
        )
        return ConnectorResult(True, f"Found change set {change_set_name}", info)

    def execute_change_set(self, stack_name: str, change_set_name: str,
                           region: str) -> ConnectorResult:
        try:
            self._client("cloudformation", region).execute_change_set(
                StackName=stack_name, ChangeSetName=change_set_name
            )
        except (ClientError, BotoCoreError) as e:
            return self._failure(f"execute change set {change_set_name}", e)

        logger.info(f"Executing change set {change_set_name} on {stack_name}")
        return ConnectorResult(True, f"Executing change set {change_set_name}")

    # Identity object capability

    def _iam_call(self, action: str, method: str, **kwargs) -> ConnectorResult:
        """Call an IAM API, mapping NoSuchEntity to a not-found result."""
        try:
            response = getattr(self.iam_client, method)(**kwargs)
        except ClientError as e:
            if _error_code(e) == "NoSuchEntity":
                return ConnectorResult(False, f"Cannot {action}: not found", not_found=True)
            return self._failure(action, e)
        except BotoCoreError as e:
            return self._failure(action, e)
        return ConnectorResult(True, action, response)

    def _paginate(self, action: str, method: str, key: str, **kwargs) -> ConnectorResult:
        items = []
        try:
            for page in self.iam_client.get_paginator(method).paginate(**kwargs):
                items.extend(page.get(key, []))
        except ClientError as e:
            if _error_code(e) == "NoSuchEntity":
                return ConnectorResult(False, f"Cannot {action}: not found", not_found=True)
            return self._failure(action, e)
        except BotoCoreError as e:
            return self._failure(action, e)
        return ConnectorResult(True, action, items)

    def get_role(self, role_name: str) -> ConnectorResult:
        result = self._iam_call(f"get role {role_name}", "get_role", RoleName=role_name)
        if result.success:
            result.data = result.data["Role"]
        return result

    def delete_role(self, role_name: str) -> ConnectorResult:
        result = self._iam_call(f"delete role {role_name}", "delete_role", RoleName=role_name)
        if result.success:
            logger.info(f"Deleted IAM role: {role_name}")
        return result

    def list_attached_role_policies(self, role_name: str) -> ConnectorResult:
        result = self._paginate(f"list attached policies of {role_name}",
                                "list_attached_role_policies", "AttachedPolicies",
                                RoleName=role_name)
        if result.success:
            result.data = [policy["PolicyArn"] for policy in result.data]
        return result

    def detach_role_policy(self, role_name: str, policy_arn: str) -> ConnectorResult:
        return self._iam_call(f"detach {policy_arn} from {role_name}", "detach_role_policy",
                              RoleName=role_name, PolicyArn=policy_arn)

    def list_role_policies(self, role_name: str) -> ConnectorResult:
        return self._paginate(f"list inline policies of {role_name}", "list_role_policies",
                              "PolicyNames", RoleName=role_name)

    def delete_role_policy(self, role_name: str, policy_name: str) -> ConnectorResult:
        return self._iam_call(f"delete inline policy {policy_name} of {role_name}",
                              "delete_role_policy", RoleName=role_name, PolicyName=policy_name)

    def list_instance_profiles_for_role(self, role_name: str) -> ConnectorResult:
        result = self._paginate(f"list instance profiles of {role_name}",
                                "list_instance_profiles_for_role", "InstanceProfiles",
                                RoleName=role_name)
        if result.success:
            result.data = [profile["InstanceProfileName"] for profile in result.data]
        return result

    def remove_role_from_instance_profile(self, role_name: str,
                                          instance_profile_name: str) -> ConnectorResult:
        return self._iam_call(f"remove {role_name} from {instance_profile_name}",
                              "remove_role_from_instance_profile", RoleName=role_name,
                              InstanceProfileName=instance_profile_name)

    # Managed policy capability

    def get_policy(self, policy_arn: str) -> ConnectorResult:
        result = self._iam_call(f"get policy {policy_arn}", "get_policy", PolicyArn=policy_arn)
        if result.success:
            policy = result.data["Policy"]
            result.data = PolicyInfo(
                arn=policy["Arn"],
                policy_name=policy["PolicyName"],
                default_version_id=policy["DefaultVersionId"],
            )
        return result

    def create_policy(self, policy_name: str, document_body: str) -> ConnectorResult:
        result = self._iam_call(f"create policy {policy_name}", "create_policy",
                                PolicyName=policy_name, PolicyDocument=document_body)
        if result.success:
            policy = result.data["Policy"]
            result.data = PolicyInfo(
                arn=policy["Arn"],
                policy_name=policy["PolicyName"],
                default_version_id=policy["DefaultVersionId"],
            )
            logger.info(f"Created managed policy: {policy['Arn']}")
        return result

    def create_policy_version(self, policy_arn: str, document_body: str,
                              set_as_default: bool = True) -> ConnectorResult:
        result = self._iam_call(f"create version of {policy_arn}", "create_policy_version",
                                PolicyArn=policy_arn, PolicyDocument=document_body,
                                SetAsDefault=set_as_default)
        if result.success:
            result.data = result.data["PolicyVersion"]["VersionId"]
        return result

    def list_policy_versions(self, policy_arn: str) -> ConnectorResult:
        result = self._paginate(f"list versions of {policy_arn}", "list_policy_versions",
                                "Versions", PolicyArn=policy_arn)
        if result.success:
            result.data = [
                PolicyVersion(
                    version_id=version["VersionId"],
                    is_default=version["IsDefaultVersion"],
                    create_date=version.get("CreateDate"),
                )
                for version in result.data
            ]
        return result

    def delete_policy_version(self, policy_arn: str, version_id: str) -> ConnectorResult:
        return self._iam_call(f"delete {version_id} of {policy_arn}", "delete_policy_version",
                              PolicyArn=policy_arn, VersionId=version_id)

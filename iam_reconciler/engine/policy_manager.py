"""
Policy Version Manager for the IAM Reconciler.

Creates or updates a role's managed policy. An update always adds a new
default version and keeps the previous default as the single rollback
point; every other version is pruned.
"""

import json
import logging
from datetime import datetime

from ..connectors import BaseConnector
from ..exceptions import PolicyDocumentInvalidError, PolicyUpdateError
from ..models import PolicyAction, PolicyUpsertResult, policy_arn

logger = logging.getLogger(__name__)


class PolicyVersionManager:
    """Upserts managed policies with version rotation."""

    def __init__(self, connector: BaseConnector, max_versions: int = 5):
        self.connector = connector
        self.max_versions = max_versions

    def upsert_policy(self, account_id: str, policy_name: str,
                      document_body: str) -> PolicyUpsertResult:
        """
        Create the policy, or roll it forward to a new default version.

        Args:
            account_id: Account owning the policy
            policy_name: Policy name (equal to the role name)
            document_body: JSON policy document

        Returns:
            PolicyUpsertResult describing what was done

        Raises:
            PolicyDocumentInvalidError: if the document is not valid JSON
            PolicyUpdateError: if the lookup, create or new version fails
        """
        self.validate_document(policy_name, document_body)
        arn = policy_arn(account_id, policy_name)

        lookup = self.connector.get_policy(arn)
        if not lookup.success and not lookup.not_found:
            raise PolicyUpdateError(f"Failed to look up policy {arn}: {lookup.error}")

        if lookup.not_found:
            created = self.connector.create_policy(policy_name, document_body)
            if not created.success:
                raise PolicyUpdateError(f"Failed to create policy {policy_name}: {created.error}")
            logger.info(f"Created policy {arn} ({created.data.default_version_id})")
            return PolicyUpsertResult(
                policy_arn=arn,
                action=PolicyAction.CREATED,
                default_version_id=created.data.default_version_id,
            )

        previous_default = lookup.data.default_version_id
        self._make_room(arn, previous_default)
        version = self.connector.create_policy_version(arn, document_body, set_as_default=True)
        if not version.success:
            raise PolicyUpdateError(f"Failed to create new version of {arn}: {version.error}")
        new_default = version.data
        logger.info(f"Policy {arn} now defaults to {new_default} (rollback: {previous_default})")

        result = PolicyUpsertResult(
            policy_arn=arn,
            action=PolicyAction.UPDATED,
            default_version_id=new_default,
            previous_version_id=previous_default,
        )
        self._prune_versions(result, keep={new_default, previous_default})
        return result

    def _make_room(self, arn: str, default_version_id: str):
        """
        Free a version slot when the policy is already at the backend cap.

        Only happens for policies whose versions were added outside this tool.
        The oldest non-default versions go first; the default is never touched.
        """
        listing = self.connector.list_policy_versions(arn)
        if not listing.success or len(listing.data) < self.max_versions:
            return

        spare = sorted(
            (v for v in listing.data if v.version_id != default_version_id),
            key=lambda v: (v.create_date is None, v.create_date or datetime.min),
        )
        excess = len(listing.data) - self.max_versions + 1
        for version in spare[:excess]:
            deleted = self.connector.delete_policy_version(arn, version.version_id)
            if not deleted.success:
                raise PolicyUpdateError(
                    f"Policy {arn} is at {self.max_versions} versions and "
                    f"{version.version_id} could not be deleted: {deleted.error}"
                )
            logger.info(f"Deleted version {version.version_id} of {arn} to stay under the version cap")

    def _prune_versions(self, result: PolicyUpsertResult, keep: set):
        """Delete superseded versions. Failures are logged and skipped."""
        listing = self.connector.list_policy_versions(result.policy_arn)
        if not listing.success:
            message = f"Could not list versions of {result.policy_arn}: {listing.error}"
            logger.warning(message)
            result.prune_failures.append(message)
            return

        for version in listing.data:
            if version.version_id in keep:
                continue
            deleted = self.connector.delete_policy_version(result.policy_arn, version.version_id)
            if deleted.success:
                logger.info(f"Deleted version {version.version_id} of {result.policy_arn}")
                result.pruned_versions.append(version.version_id)
            elif deleted.not_found:
                logger.debug(f"Version {version.version_id} of {result.policy_arn} is already gone")
            else:
                message = (f"Could not delete version {version.version_id} of "
                           f"{result.policy_arn}: {deleted.error or deleted.message}")
                logger.warning(message)
                result.prune_failures.append(message)

    @staticmethod
    def validate_document(policy_name: str, document_body: str):
        """Reject documents that are not JSON objects with a Statement."""
        try:
            document = json.loads(document_body)
        except ValueError as e:
            raise PolicyDocumentInvalidError(
                f"Policy document for {policy_name} is not valid JSON: {e}"
            ) from e
        if not isinstance(document, dict) or "Statement" not in document:
            raise PolicyDocumentInvalidError(
                f"Policy document for {policy_name} has no Statement"
            )

"""
Role Lifecycle Manager for the IAM Reconciler.

A role must never exist without the stack that manages it. When a role is
found with no backing stack it was created out of band; it is torn down so
the stack can create it again under management.
"""

import logging
from typing import List

from ..connectors import BaseConnector, ConnectorResult
from ..exceptions import RoleCleanupError

logger = logging.getLogger(__name__)


class RoleLifecycleManager:
    """Detects and removes orphaned roles."""

    def __init__(self, connector: BaseConnector):
        self.connector = connector

    def reconcile_orphan(self, role_name: str, region: str) -> bool:
        """
        Delete the role if it exists without a stack of the same name.

        Args:
            role_name: Role name, which is also the stack name
            region: Region of the stack

        Returns:
            True if an orphaned role was deleted, False if nothing was done

        Raises:
            RoleCleanupError: if a lookup or teardown step fails
        """
        stack = self.connector.get_stack(role_name, region)
        if not stack.success and not stack.not_found:
            raise RoleCleanupError(f"Failed to look up stack {role_name}: {stack.error}")

        role = self.connector.get_role(role_name)
        if not role.success and not role.not_found:
            raise RoleCleanupError(f"Failed to look up role {role_name}: {role.error}")

        if stack.not_found and role.success:
            logger.warning(f"Role {role_name} exists without a stack, deleting it")
            self.delete_role(role_name)
            return True

        logger.debug(
            f"Role {role_name}: stack {'absent' if stack.not_found else 'present'}, "
            f"role {'absent' if role.not_found else 'present'}; nothing to clean up"
        )
        return False

    def delete_role(self, role_name: str):
        """Detach everything from a role, then delete it."""
        for profile in self._list(self.connector.list_instance_profiles_for_role(role_name),
                                  f"instance profiles of {role_name}"):
            self._check(self.connector.remove_role_from_instance_profile(role_name, profile),
                        f"remove {role_name} from instance profile {profile}")

        for arn in self._list(self.connector.list_attached_role_policies(role_name),
                              f"attached policies of {role_name}"):
            self._check(self.connector.detach_role_policy(role_name, arn),
                        f"detach {arn} from {role_name}")

        for name in self._list(self.connector.list_role_policies(role_name),
                               f"inline policies of {role_name}"):
            self._check(self.connector.delete_role_policy(role_name, name),
                        f"delete inline policy {name} of {role_name}")

        self._check(self.connector.delete_role(role_name), f"delete role {role_name}")
        logger.info(f"Deleted orphaned role {role_name}")

    @staticmethod
    def _list(result: ConnectorResult, what: str) -> List[str]:
        if result.not_found:
            return []
        if not result.success:
            raise RoleCleanupError(f"Failed to list {what}: {result.error}")
        return result.data or []

    @staticmethod
    def _check(result: ConnectorResult, action: str):
        # Something already gone counts as done.
        if result.success or result.not_found:
            return
        raise RoleCleanupError(f"Failed to {action}: {result.error}")

"""
Workflow Helper Functions for the IAM Reconciler.

Role selection and definition checks shared by the orchestrator and the CLI.
"""

import logging
from typing import List, Optional, Sequence

from ..definitions import AccountTree
from ..models import RoleDefinition

logger = logging.getLogger(__name__)


def role_matches(role_name: str, role_filter: Optional[Sequence[str]]) -> bool:
    """A role is selected when its name contains any filter substring, or there is no filter."""
    if not role_filter:
        return True
    return any(part in role_name for part in role_filter)


def select_roles(roles: Sequence[RoleDefinition],
                 role_filter: Optional[Sequence[str]] = None) -> List[RoleDefinition]:
    """
    Filter roles by name substrings, keeping definition order.

    Args:
        roles: Roles defined for an account
        role_filter: Substrings; empty or None selects every role

    Returns:
        The selected roles
    """
    selected = [role for role in roles if role_matches(role.role_name, role_filter)]
    logger.debug(f"Selected {len(selected)} of {len(roles)} roles (filter={list(role_filter or [])})")
    return selected


def validate_account_tree(tree: AccountTree) -> List[str]:
    """
    Check an account's definitions for consistency.

    Args:
        tree: Loaded account with its roles

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []
    seen = set()

    for role in tree.roles:
        if role.role_name in seen:
            errors.append(f"Duplicate role {role.role_name}")
        seen.add(role.role_name)

        if not (role.role_name == role.stack_name == role.policy_name):
            errors.append(
                f"Role {role.role_name}: stack {role.stack_name} and policy "
                f"{role.policy_name} must share its name"
            )

        if role.policy.account_id != tree.account.account_id:
            errors.append(
                f"Role {role.role_name}: policy targets account {role.policy.account_id}, "
                f"expected {tree.account.account_id}"
            )

    return errors

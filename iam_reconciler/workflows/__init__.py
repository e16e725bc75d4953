"""
Workflows Package for the IAM Reconciler.

This package contains the account reconciliation workflow and the
helpers it shares with the CLI.
"""

from .account_workflow import AccountReconcileWorkflow
from .base_workflow import BaseWorkflow, WorkflowStep
from .helpers import role_matches, select_roles, validate_account_tree

__all__ = [
    "AccountReconcileWorkflow",
    "BaseWorkflow",
    "WorkflowStep",
    "role_matches",
    "select_roles",
    "validate_account_tree",
]

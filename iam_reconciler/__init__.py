"""
IAM Reconciler

Converges per-account IAM roles and managed policies, defined as a tree of
folders, onto CloudFormation stacks and IAM managed policies.

Each role is backed by a stack and owns a managed policy of the same name.
Runs are idempotent: re-running against an up-to-date account changes nothing.
"""

__version__ = "1.0.0"
__author__ = "IAM Reconciler Team"
__email__ = "team@example.com"

from .engine.credentials import CredentialManager
from .engine.policy_manager import PolicyVersionManager
from .engine.role_manager import RoleLifecycleManager
from .engine.stack_reconciler import StackReconciler
from .workflows.account_workflow import AccountReconcileWorkflow

__all__ = [
    "CredentialManager",
    "PolicyVersionManager",
    "RoleLifecycleManager",
    "StackReconciler",
    "AccountReconcileWorkflow",
]

"""
Reconciliation Engine Package.

This package provides the components that converge remote IAM state:
credential switching, policy version rotation, orphaned role cleanup
and stack create-or-update.
"""

from .credentials import CredentialManager
from .policy_manager import PolicyVersionManager
from .polling import PollPolicy, PollTimeout, poll_until
from .role_manager import RoleLifecycleManager
from .stack_reconciler import StackReconciler

__all__ = [
    "CredentialManager",
    "PolicyVersionManager",
    "PollPolicy",
    "PollTimeout",
    "poll_until",
    "RoleLifecycleManager",
    "StackReconciler",
]

"""
Definitions Package.

Loads the account/role folder tree the reconciler converges to.
"""

from .loader import AccountTree, DefinitionLoader, deep_merge, load_tree, substitute

__all__ = ["AccountTree", "DefinitionLoader", "deep_merge", "load_tree", "substitute"]

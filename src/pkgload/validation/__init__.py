"""Validation module for pkgload.

The package graph is the primary loader; StandaloneLoader is a second,
independent implementation of the same BUILD-file semantics. This module
checks that the two agree on the targets of every package a test loads.
"""

from .consistency import (
    CrossLoaderConsistencyChecker,
    InconsistentLoaderStateError,
    LoaderDivergenceError,
    TargetSetDivergence,
    WorkspaceRootError,
    check_loader_consistency,
    compare_target_sets,
    derive_workspace_root,
    find_divergences,
    is_eligible,
)

__all__ = [
    "CrossLoaderConsistencyChecker",
    "InconsistentLoaderStateError",
    "LoaderDivergenceError",
    "TargetSetDivergence",
    "WorkspaceRootError",
    "check_loader_consistency",
    "compare_target_sets",
    "derive_workspace_root",
    "find_divergences",
    "is_eligible",
]

#!/usr/bin/env python3
"""
Cross-check both package loaders on a workspace

This example shows how to:
1. Find the workspace root and its packages
2. Load every package with the package graph
3. Reload each one with the standalone loader and report mismatches
"""

import sys
from pathlib import Path

from pkgload.config import LoaderSettings, resolve_semantics
from pkgload.logging import configure_logging
from pkgload.validation import find_divergences
from pkgload.workspace import discover_packages, find_workspace_root


# =============================================================================
# LOCATE THE WORKSPACE
# =============================================================================

settings = LoaderSettings.from_environment()
configure_logging(settings.log_level)

start = Path(sys.argv[1]) if len(sys.argv) > 1 else Path.cwd()
root = find_workspace_root(start)
semantics = resolve_semantics(settings, root)
packages = discover_packages(root, semantics)

print(f"Workspace: {root}")
print(f"Packages:  {len(packages)}")


# =============================================================================
# COMPARE THE LOADERS
# =============================================================================

divergences = find_divergences(root, packages=packages, semantics=semantics)

if not divergences:
    print("Both loaders agree on every package.")
    sys.exit(0)

for divergence in divergences:
    print()
    print(f"{divergence.package_id}:")
    for label in sorted(divergence.only_in_original):
        print(f"  only in package graph:     {label}")
    for label in sorted(divergence.only_in_reloaded):
        print(f"  only in standalone loader: {label}")

sys.exit(1)

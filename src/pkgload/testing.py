"""Pytest plugin: package graphs whose loads are cross-checked.

Enable it from a conftest.py:

    pytest_plugins = ("pkgload.testing",)

Every graph built through the package_graph_factory fixture has a
CrossLoaderConsistencyChecker installed as its loading-complete hook (unless
PKGLOAD_VERIFY_LOADERS=0), so each package a test loads is also reloaded by
the StandaloneLoader and compared.
"""

import threading
from pathlib import Path
from typing import Callable

import pytest

from .config import LoaderSettings, resolve_semantics
from .graph import PackageGraph
from .logging import configure_logging
from .rules import RuleClassProvider, default_rule_class_provider
from .semantics import SemanticsConfig
from .validation.consistency import CrossLoaderConsistencyChecker

GraphFactory = Callable[..., PackageGraph]


def write_workspace(root: Path, files: dict[str, str], workspace: str = "") -> Path:
    """Write a workspace tree under root.

    Args:
        root: Directory to populate
        files: Relative path -> content
        workspace: Content of the WORKSPACE file (always created)

    Returns:
        The workspace root
    """
    root.mkdir(parents=True, exist_ok=True)
    if "WORKSPACE" not in files and "WORKSPACE.bazel" not in files:
        (root / "WORKSPACE").write_text(workspace)
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture(scope="session")
def loader_settings() -> LoaderSettings:
    settings = LoaderSettings.from_environment()
    configure_logging(settings.log_level)
    return settings


@pytest.fixture
def rule_class_provider() -> RuleClassProvider:
    return default_rule_class_provider()


@pytest.fixture
def load_interrupt() -> threading.Event:
    """Set it to abandon consistency checks still in progress."""
    return threading.Event()


@pytest.fixture
def consistency_checker(
    rule_class_provider: RuleClassProvider, load_interrupt: threading.Event
) -> CrossLoaderConsistencyChecker:
    return CrossLoaderConsistencyChecker(rule_class_provider, interrupt=load_interrupt)


@pytest.fixture
def package_graph_factory(
    loader_settings: LoaderSettings,
    rule_class_provider: RuleClassProvider,
    consistency_checker: CrossLoaderConsistencyChecker,
) -> GraphFactory:
    def factory(workspace_root: Path, semantics: SemanticsConfig | None = None) -> PackageGraph:
        return PackageGraph(
            workspace_root,
            rule_class_provider=rule_class_provider,
            semantics=semantics or resolve_semantics(loader_settings, workspace_root),
            hook=consistency_checker if loader_settings.verify_loaders else None,
            jobs=loader_settings.jobs,
        )

    return factory

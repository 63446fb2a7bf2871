"""Cross-loader consistency validation.

Ensures the primary (graph-based) loader and the standalone loader produce
the same set of targets for the same package. The check is installed as the
primary graph's loading-complete hook during tests, so every package a test
loads is reloaded standalone and compared.
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol

from ..graph import PackageGraph, is_defaults_package
from ..labels import EXTERNAL_PACKAGE_IDENTIFIER, Label, PackageIdentifier
from ..packages import LoadInterruptedError, NoSuchPackageError, Package
from ..rules import RuleClassProvider, default_rule_class_provider
from ..semantics import SemanticsConfig
from ..standalone import StandaloneLoader
from ..workspace import discover_packages

logger = logging.getLogger(__name__)


class WorkspaceRootError(ValueError):
    """Raised when a package's path doesn't end in its own package path."""

    pass


class InconsistentLoaderStateError(RuntimeError):
    """Raised when the standalone loader can't find a package that was just loaded."""

    pass


class PackageLoader(Protocol):
    def load_package(self, package_id: PackageIdentifier) -> Package: ...


LoaderFactory = Callable[..., PackageLoader]


def is_eligible(package_id: PackageIdentifier) -> bool:
    """Whether a package can be reloaded standalone and compared.

    The external package, packages of other repositories and the synthesized
    defaults package are loaded differently by the standalone loader, so
    comparing them would only produce noise.
    """
    if package_id == EXTERNAL_PACKAGE_IDENTIFIER:
        return False
    if not package_id.repository.is_main:
        return False
    if is_defaults_package(package_id):
        return False
    return True


def derive_workspace_root(package: Package) -> Path:
    """Recover the workspace root from the package's BUILD file path.

    The BUILD file lives at <root>/<package path>/<BUILD>, so the root is the
    file path with (package segments + 1) trailing segments removed.

    Raises:
        WorkspaceRootError: If the trailing segments don't match the package path
    """
    name_parts = package.name_fragment.parts if package.name else ()
    full_parts = package.filename.parts
    keep = len(full_parts) - (len(name_parts) + 1)
    if keep < 1:
        raise WorkspaceRootError(
            f"BUILD file {package.filename} is too short for package '{package.package_id}'"
        )
    if tuple(full_parts[keep:-1]) != tuple(name_parts):
        raise WorkspaceRootError(
            f"BUILD file {package.filename} is not located at package path '{package.name}'"
        )
    return Path(*full_parts[:keep])


@dataclass(frozen=True)
class TargetSetDivergence:
    """Difference between the target labels of the two loads of a package."""

    package_id: PackageIdentifier
    only_in_original: frozenset[Label]
    only_in_reloaded: frozenset[Label]

    @property
    def consistent(self) -> bool:
        return not self.only_in_original and not self.only_in_reloaded

    def describe(self) -> str:
        return (
            f"The Package for {self.package_id} had a different set of targets "
            f"(<targets in original> - <targets in reloaded> = {_format_labels(self.only_in_original)}, "
            f"<targets in reloaded> - <targets in original> = {_format_labels(self.only_in_reloaded)}) "
            "when loaded by the package graph during the current test than when reloaded by "
            "StandaloneLoader (done automatically by the CrossLoaderConsistencyChecker hook). "
            "This either means: (i) package graph loading semantics have diverged from "
            "StandaloneLoader semantics, or (ii) the test in question is doing something that "
            "confuses the hook, such as changing targets after loading or loading a package "
            "whose files on disk don't match what was loaded."
        )


def _format_labels(labels: frozenset[Label]) -> str:
    return "[" + ", ".join(str(label) for label in sorted(labels)) + "]"


class LoaderDivergenceError(AssertionError):
    """Raised when the two loaders disagree on a package's targets."""

    def __init__(self, divergence: TargetSetDivergence):
        self.divergence = divergence
        super().__init__(divergence.describe())


def compare_target_sets(original: Package, reloaded: Package) -> TargetSetDivergence:
    """Compare the target labels of two loads of the same package."""
    original_labels = original.labels()
    reloaded_labels = reloaded.labels()
    return TargetSetDivergence(
        package_id=original.package_id,
        only_in_original=original_labels - reloaded_labels,
        only_in_reloaded=reloaded_labels - original_labels,
    )


class CrossLoaderConsistencyChecker:
    """Loading-complete hook that reloads each package standalone and compares.

    Example:
        checker = CrossLoaderConsistencyChecker(provider)
        graph = PackageGraph(root, rule_class_provider=provider, hook=checker)
        graph.get_package("//app")  # raises LoaderDivergenceError on mismatch
    """

    # Shared by every checker: one reload-and-compare at a time, process-wide
    _lock = threading.Lock()

    def __init__(
        self,
        rule_class_provider: RuleClassProvider,
        loader_factory: LoaderFactory = StandaloneLoader,
        interrupt: threading.Event | None = None,
    ):
        """Initialize the checker.

        Args:
            rule_class_provider: Rules the standalone loader evaluates BUILD files with
            loader_factory: Builds the standalone loader for a workspace root
            interrupt: Forwarded to the loader; once set, checks are abandoned
        """
        self.rule_class_provider = rule_class_provider
        self.loader_factory = loader_factory
        self.interrupt = interrupt

    def on_loading_complete(self, package: Package, semantics: Any) -> None:
        self.check(package, semantics)

    def check(self, package: Package, semantics: SemanticsConfig) -> TargetSetDivergence | None:
        """Reload package standalone and compare its targets.

        Returns:
            The (empty) divergence, or None if the package was skipped or the
            reload was interrupted

        Raises:
            LoaderDivergenceError: If the target sets differ
            InconsistentLoaderStateError: If the standalone loader can't load the package
        """
        package_id = package.package_id
        if not is_eligible(package_id):
            logger.debug("Skipping consistency check for %s", package_id)
            return None

        with self._lock:
            workspace_root = derive_workspace_root(package)
            options: dict[str, Any] = {"rule_class_provider": self.rule_class_provider, "semantics": semantics}
            if self.interrupt is not None:
                options["interrupt"] = self.interrupt
            loader = self.loader_factory(workspace_root, **options)
            try:
                reloaded = loader.load_package(package_id)
            except LoadInterruptedError:
                logger.info("Consistency check for %s abandoned: reload was interrupted", package_id)
                return None
            except NoSuchPackageError as e:
                raise InconsistentLoaderStateError(
                    f"{package_id} was loaded by the package graph but the standalone loader failed: {e}"
                ) from e

            divergence = compare_target_sets(package, reloaded)
            if not divergence.consistent:
                raise LoaderDivergenceError(divergence)

        logger.debug("Loaders agree on %s (%d targets)", package_id, len(package.targets))
        return divergence


def check_loader_consistency(
    workspace_root: str | Path,
    packages: list[PackageIdentifier | str] | None = None,
    semantics: SemanticsConfig | None = None,
    rule_class_provider: RuleClassProvider | None = None,
) -> bool:
    """Load packages with the consistency checker installed.

    Args:
        workspace_root: Workspace to check
        packages: Packages to load (default: every package in the workspace)
        semantics: Build-language options
        rule_class_provider: Rules available to BUILD files

    Returns:
        True if all packages loaded consistently; raises otherwise
    """
    provider = rule_class_provider or default_rule_class_provider()
    checker = CrossLoaderConsistencyChecker(provider)
    graph = PackageGraph(workspace_root, rule_class_provider=provider, semantics=semantics, hook=checker)
    if packages is None:
        packages = discover_packages(graph.workspace_root, graph.semantics)
    graph.get_packages(packages)
    return True


def find_divergences(
    workspace_root: str | Path,
    packages: list[PackageIdentifier | str] | None = None,
    semantics: SemanticsConfig | None = None,
    rule_class_provider: RuleClassProvider | None = None,
) -> list[TargetSetDivergence]:
    """Compare both loaders on each package and collect the mismatches.

    Unlike the hook, this doesn't stop at the first divergence. Packages the
    standalone loader can't load still raise InconsistentLoaderStateError.
    """
    provider = rule_class_provider or default_rule_class_provider()
    checker = CrossLoaderConsistencyChecker(provider)
    graph = PackageGraph(workspace_root, rule_class_provider=provider, semantics=semantics)
    if packages is None:
        packages = discover_packages(graph.workspace_root, graph.semantics)

    divergences = []
    for package in graph.get_packages(packages).values():
        try:
            checker.check(package, graph.semantics)
        except LoaderDivergenceError as e:
            divergences.append(e.divergence)
    return divergences

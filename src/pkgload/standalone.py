"""Standalone package loader for batch and offline use.

Loads packages straight from disk without a dependency graph: every call to
load_package() reads the BUILD file and the .bzl files it loads afresh.
Only main-repository packages can be loaded; .bzl files may come from
repositories declared with local_repository() in the WORKSPACE file.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .labels import Label, PackageIdentifier, RepositoryName
from .packages import (
    BuildFileContainsErrorsError,
    LoadInterruptedError,
    NoSuchPackageError,
    Package,
    PackageBuildError,
    PackageBuilder,
)
from .rules import RuleClassProvider, default_rule_class_provider
from .semantics import (
    DEFAULT_SEMANTICS,
    BuildFileEvaluator,
    EvaluationError,
    SemanticsConfig,
    bind_loaded_symbols,
    resolve_load_label,
)
from .workspace import (
    WorkspaceDefinition,
    evaluate_workspace_file,
    find_build_file,
    find_workspace_file,
    list_package_files,
)

logger = logging.getLogger(__name__)


@dataclass
class _LoadContext:
    """State shared by the .bzl loads of one load_package() call."""

    modules: dict[Label, dict[str, Any]] = field(default_factory=dict)
    workspace: WorkspaceDefinition | None = None


class StandaloneLoader:
    """Loads packages of a single workspace, one package at a time.

    Example:
        loader = StandaloneLoader(Path("/src/workspace"), semantics=SemanticsConfig())
        pkg = loader.load_package(PackageIdentifier.in_main("app/server"))
    """

    def __init__(
        self,
        workspace_root: str | Path,
        *,
        rule_class_provider: RuleClassProvider | None = None,
        semantics: SemanticsConfig | None = None,
        interrupt: threading.Event | None = None,
    ):
        """Initialize loader.

        Args:
            workspace_root: Root directory of the main repository
            rule_class_provider: Rules available to BUILD files
            semantics: Build-language options
            interrupt: When set, loads in progress stop with LoadInterruptedError
        """
        self.workspace_root = Path(workspace_root)
        self.rule_class_provider = rule_class_provider or default_rule_class_provider()
        self.semantics = semantics or DEFAULT_SEMANTICS
        self.interrupt = interrupt

    def _check_interrupted(self) -> None:
        if self.interrupt is not None and self.interrupt.is_set():
            raise LoadInterruptedError("package loading was interrupted")

    def load_package(self, package_id: PackageIdentifier) -> Package:
        """Load one package from disk.

        Args:
            package_id: Package to load

        Returns:
            The freshly loaded Package

        Raises:
            NoSuchPackageError: If the package is missing or its BUILD file has errors
            LoadInterruptedError: If the interrupt event is set during loading
        """
        self._check_interrupted()
        if not package_id.repository.is_main:
            raise NoSuchPackageError(package_id, "only main-repository packages can be loaded standalone")

        directory = self.workspace_root / package_id.package_path
        build_file = find_build_file(directory, self.semantics)
        if build_file is None:
            raise NoSuchPackageError(package_id, f"BUILD file not found in directory '{directory}'")

        try:
            source = build_file.read_text(encoding="utf-8")
        except OSError as e:
            raise NoSuchPackageError(package_id, f"cannot read {build_file}: {e}") from e

        evaluator = BuildFileEvaluator(self.rule_class_provider, self.semantics)
        try:
            loaded = self._load_symbols(evaluator, source, str(build_file), package_id, _LoadContext(), [])
            self._check_interrupted()
            builder = PackageBuilder(package_id, build_file, self.semantics.implicit_input_files)
            evaluator.evaluate_build_file(
                builder, source, loaded, lambda: list_package_files(directory, self.semantics)
            )
            package = builder.build()
        except (EvaluationError, PackageBuildError) as e:
            raise BuildFileContainsErrorsError(package_id, str(e)) from e

        self._check_interrupted()
        logger.debug("Standalone load of %s: %d targets", package_id, len(package.targets))
        return package

    def load_packages(self, package_ids: list[PackageIdentifier]) -> dict[PackageIdentifier, Package]:
        """Load packages one after another."""
        return {package_id: self.load_package(package_id) for package_id in package_ids}

    def _repository_root(self, repository: RepositoryName, context: _LoadContext) -> Path | None:
        """Root of a repository; other repositories come from the WORKSPACE file."""
        if repository.is_main:
            return self.workspace_root
        if context.workspace is None:
            workspace_file = find_workspace_file(self.workspace_root)
            if workspace_file is None:
                context.workspace = WorkspaceDefinition(filename=None)
            else:
                context.workspace = evaluate_workspace_file(
                    workspace_file.read_text(encoding="utf-8"), workspace_file, self.workspace_root.absolute()
                )
        return context.workspace.repository_root(repository)

    def _load_symbols(
        self,
        evaluator: BuildFileEvaluator,
        source: str,
        filename: str,
        package_id: PackageIdentifier,
        context: _LoadContext,
        chain: list[Label],
    ) -> dict[str, Any]:
        """Evaluate the .bzl files a file loads and return the symbols it binds.

        Args:
            context: .bzl exports and WORKSPACE definition read so far during this load
            chain: .bzl files currently being evaluated, for cycle detection
        """
        loaded: dict[str, Any] = {}
        for statement in evaluator.extract_loads(source, filename):
            label = resolve_load_label(statement, package_id, filename)
            if label not in context.modules:
                context.modules[label] = self._load_extension(evaluator, label, context, chain)
            loaded.update(bind_loaded_symbols(statement, label, context.modules[label], filename))
        return loaded

    def _load_extension(
        self,
        evaluator: BuildFileEvaluator,
        label: Label,
        context: _LoadContext,
        chain: list[Label],
    ) -> dict[str, Any]:
        if label in chain:
            cycle = " -> ".join(str(l) for l in chain[chain.index(label):] + [label])
            raise EvaluationError(f"cycle in load graph: {cycle}")
        self._check_interrupted()

        root = self._repository_root(label.repository, context)
        if root is None:
            raise EvaluationError(f"cannot load '{label}': repository '{label.repository}' is not defined")
        path = root / label.package_path / label.name
        if not path.is_file():
            raise EvaluationError(f"cannot load '{label}': no such file")
        source = path.read_text(encoding="utf-8")
        loaded = self._load_symbols(evaluator, source, str(path), label.package_id, context, chain + [label])
        return evaluator.evaluate_extension(source, str(path), loaded)

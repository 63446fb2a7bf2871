"""Incremental, graph-based package loading.

Every value the loader computes (file contents, directory listings, the
WORKSPACE definition, .bzl exports, packages) is a node in a dependency
graph. Nodes are memoized together with the nodes they read, so after a
file changes only the nodes that (transitively) depend on it are evaluated
again.

Example:
    graph = PackageGraph(Path("/src/workspace"), hook=checker)
    pkg = graph.get_package("//app/server")
    ...edit app/server/BUILD...
    graph.invalidate()
    pkg = graph.get_package("//app/server")  # re-evaluated
"""

import hashlib
import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .labels import EXTERNAL_PACKAGE_IDENTIFIER, Label, PackageIdentifier, RepositoryName
from .packages import (
    BuildFileContainsErrorsError,
    LoadingCompleteHook,
    NoSuchPackageError,
    Package,
    PackageBuildError,
    PackageBuilder,
)
from .rules import Attribute, RuleClass, RuleClassProvider, default_rule_class_provider
from .semantics import (
    DEFAULT_SEMANTICS,
    BuildFileEvaluator,
    EvaluationError,
    LoadStatement,
    SemanticsConfig,
    bind_loaded_symbols,
    resolve_load_label,
)
from .workspace import (
    WORKSPACE_FILE_NAMES,
    WorkspaceDefinition,
    build_external_package,
    evaluate_workspace_file,
    list_package_files,
)

logger = logging.getLogger(__name__)

# Built-in configuration package; it has no BUILD file on disk
DEFAULTS_PACKAGE_NAME = "tools/defaults"

_ALIAS = RuleClass("alias", (Attribute("actual", "label", mandatory=True),))

LEAF_KINDS = ("file", "listing")


def is_defaults_package(package_id: PackageIdentifier) -> bool:
    return package_id.repository.is_main and package_id.package_path == DEFAULTS_PACKAGE_NAME


@dataclass(frozen=True)
class NodeKey:
    """Identity of a graph node: kind plus kind-specific key."""

    kind: str
    key: Any

    def __str__(self) -> str:
        return f"{self.kind}:{self.key}"


@dataclass(frozen=True)
class FileValue:
    """Content of a file at the time it was read; content is None if missing."""

    path: Path
    digest: str | None
    content: str | None

    @property
    def exists(self) -> bool:
        return self.digest is not None


@dataclass
class _Node:
    value: Any
    deps: set[NodeKey]
    rdeps: set[NodeKey] = field(default_factory=set)


class _Environment:
    """Hands out node values to one computation and records what it read."""

    def __init__(self, graph: "PackageGraph"):
        self._graph = graph
        self.deps: set[NodeKey] = set()

    def get(self, key: NodeKey) -> Any:
        self.deps.add(key)
        return self._graph._get(key)

    def file(self, path: Path) -> FileValue:
        return self.get(NodeKey("file", path))


def _read_file(path: Path) -> FileValue:
    try:
        data = path.read_bytes()
    except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
        return FileValue(path, None, None)
    return FileValue(path, hashlib.sha256(data).hexdigest(), data.decode("utf-8"))


class PackageGraph:
    """Primary package loader with memoization and incremental invalidation."""

    def __init__(
        self,
        workspace_root: str | Path,
        rule_class_provider: RuleClassProvider | None = None,
        semantics: SemanticsConfig | None = None,
        hook: LoadingCompleteHook | None = None,
        jobs: int = 4,
    ):
        """Initialize the graph.

        Args:
            workspace_root: Root directory of the main repository
            rule_class_provider: Rules available to BUILD files
            semantics: Build-language options
            hook: Called once for every package the graph builds
            jobs: Worker threads used by get_packages()
        """
        self.workspace_root = Path(workspace_root).absolute()
        self.rule_class_provider = rule_class_provider or default_rule_class_provider()
        self.semantics = semantics or DEFAULT_SEMANTICS
        self.hook = hook
        self.jobs = jobs
        self.stats: Counter[str] = Counter()

        self._nodes: dict[NodeKey, _Node] = {}
        self._lock = threading.RLock()
        self._package_locks: dict[NodeKey, threading.Lock] = {}
        self._local = threading.local()

    # Public API

    def get_package(self, package_id: PackageIdentifier | str) -> Package:
        """Return the package, building it if it isn't memoized.

        Raises:
            NoSuchPackageError: If the package doesn't exist or fails to load
        """
        if isinstance(package_id, str):
            package_id = PackageIdentifier.parse(package_id)
        return self._get(NodeKey("package", package_id))

    def get_packages(self, package_ids: list[PackageIdentifier | str]) -> dict[PackageIdentifier, Package]:
        """Load several packages concurrently."""
        ids = [PackageIdentifier.parse(p) if isinstance(p, str) else p for p in package_ids]
        with ThreadPoolExecutor(max_workers=self.jobs) as pool:
            futures = {package_id: pool.submit(self.get_package, package_id) for package_id in ids}
        return {package_id: future.result() for package_id, future in futures.items()}

    def is_loaded(self, package_id: PackageIdentifier) -> bool:
        with self._lock:
            return NodeKey("package", package_id) in self._nodes

    def invalidate(self, paths: list[str | Path] | None = None) -> set[NodeKey]:
        """Drop nodes affected by changes on disk.

        Args:
            paths: Changed files or directories; None re-checks every leaf

        Returns:
            Keys of the nodes that were dropped
        """
        changed = [Path(p).absolute() for p in paths] if paths is not None else None
        with self._lock:
            dirty = []
            for key in [k for k in self._nodes if k.kind in LEAF_KINDS]:
                if changed is not None and not any(self._affects(p, key) for p in changed):
                    continue
                if self._compute_leaf(key) != self._nodes[key].value:
                    dirty.append(key)
            removed = self._remove_transitively(dirty)
        if removed:
            logger.debug("Invalidated %d node(s) after %d change(s)", len(removed), len(dirty))
        return removed

    def set_semantics(self, semantics: SemanticsConfig) -> None:
        """Switch build-language options; everything is re-evaluated."""
        with self._lock:
            self.semantics = semantics
            self._nodes.clear()
            self._package_locks = {k: lock for k, lock in self._package_locks.items() if lock.locked()}

    @property
    def node_count(self) -> int:
        with self._lock:
            return len(self._nodes)

    # Evaluation

    def _stack(self) -> list[NodeKey]:
        if not hasattr(self._local, "stack"):
            self._local.stack = []
        return self._local.stack

    def _get(self, key: NodeKey) -> Any:
        with self._lock:
            node = self._nodes.get(key)
            if node is not None:
                return node.value
            package_lock = self._package_locks.setdefault(key, threading.Lock()) if key.kind == "package" else None

        stack = self._stack()
        if key in stack:
            cycle = " -> ".join(str(k.key) for k in stack[stack.index(key):] + [key])
            raise EvaluationError(f"cycle in load graph: {cycle}")

        if package_lock is None:
            return self._evaluate(key, stack)
        # Packages are built at most once; the hook fires exactly once per build
        with package_lock:
            with self._lock:
                node = self._nodes.get(key)
                if node is not None:
                    return node.value
            return self._evaluate(key, stack)

    def _evaluate(self, key: NodeKey, stack: list[NodeKey]) -> Any:
        env = _Environment(self)
        stack.append(key)
        try:
            value = self._compute(key, env)
        finally:
            stack.pop()

        with self._lock:
            existing = self._nodes.get(key)
            if existing is not None:
                return existing.value
            self._nodes[key] = _Node(value, env.deps)
            for dep in env.deps:
                dep_node = self._nodes.get(dep)
                if dep_node is not None:
                    dep_node.rdeps.add(key)
            self.stats[key.kind] += 1
        return value

    def _compute(self, key: NodeKey, env: _Environment) -> Any:
        match key.kind:
            case "file" | "listing":
                return self._compute_leaf(key)
            case "workspace":
                return self._compute_workspace(env)
            case "extension":
                return self._compute_extension(key.key, env)
            case "package":
                return self._compute_package(key.key, env)
            case _:
                raise ValueError(f"unknown node kind: {key.kind}")

    def _compute_leaf(self, key: NodeKey) -> Any:
        if key.kind == "file":
            return _read_file(key.key)
        if not key.key.is_dir():
            return ()
        return tuple(list_package_files(key.key, self.semantics))

    def _compute_workspace(self, env: _Environment) -> WorkspaceDefinition:
        for name in WORKSPACE_FILE_NAMES:
            value = env.file(self.workspace_root / name)
            if value.exists:
                return evaluate_workspace_file(value.content, value.path, self.workspace_root)
        return WorkspaceDefinition(filename=None)

    def _repository_root(self, repository: RepositoryName, env: _Environment) -> Path | None:
        if repository.is_main:
            return self.workspace_root
        return env.get(NodeKey("workspace", None)).repository_root(repository)

    def _resolve_loads(
        self, loads: list[LoadStatement], package_id: PackageIdentifier, filename: str, env: _Environment
    ) -> dict[str, Any]:
        loaded: dict[str, Any] = {}
        for statement in loads:
            label = resolve_load_label(statement, package_id, filename)
            exported = env.get(NodeKey("extension", label))
            loaded.update(bind_loaded_symbols(statement, label, exported, filename))
        return loaded

    def _compute_extension(self, label: Label, env: _Environment) -> dict[str, Any]:
        root = self._repository_root(label.repository, env)
        if root is None:
            raise EvaluationError(f"cannot load '{label}': repository '{label.repository}' is not defined")
        value = env.file(root / label.package_path / label.name)
        if not value.exists:
            raise EvaluationError(f"cannot load '{label}': no such file")

        filename = str(value.path)
        evaluator = BuildFileEvaluator(self.rule_class_provider, self.semantics)
        loads = evaluator.extract_loads(value.content, filename)
        loaded = self._resolve_loads(loads, label.package_id, filename, env)
        return evaluator.evaluate_extension(value.content, filename, loaded)

    def _compute_package(self, package_id: PackageIdentifier, env: _Environment) -> Package:
        try:
            if package_id == EXTERNAL_PACKAGE_IDENTIFIER:
                package = build_external_package(env.get(NodeKey("workspace", None)), self.workspace_root)
            elif is_defaults_package(package_id):
                package = self._build_defaults_package()
            else:
                package = self._build_package(package_id, env)
        except (EvaluationError, PackageBuildError) as e:
            raise BuildFileContainsErrorsError(package_id, str(e)) from e

        logger.debug("Loaded %s (%d targets)", package_id, len(package.targets))
        if self.hook is not None:
            self.hook.on_loading_complete(package, self.semantics)
        return package

    def _build_package(self, package_id: PackageIdentifier, env: _Environment) -> Package:
        root = self._repository_root(package_id.repository, env)
        if root is None:
            raise NoSuchPackageError(package_id, f"repository '{package_id.repository}' is not defined")
        directory = root / package_id.package_path

        build_file = None
        for name in self.semantics.build_file_names:
            value = env.file(directory / name)
            if value.exists:
                build_file = value
                break
        if build_file is None:
            raise NoSuchPackageError(package_id, f"BUILD file not found in directory '{directory}'")

        filename = str(build_file.path)
        evaluator = BuildFileEvaluator(self.rule_class_provider, self.semantics)
        loads = evaluator.extract_loads(build_file.content, filename)
        loaded = self._resolve_loads(loads, package_id, filename, env)
        builder = PackageBuilder(package_id, build_file.path, self.semantics.implicit_input_files)
        evaluator.evaluate_build_file(
            builder,
            build_file.content,
            loaded,
            lambda: env.get(NodeKey("listing", directory)),
        )
        return builder.build()

    def _build_defaults_package(self) -> Package:
        filename = self.workspace_root / DEFAULTS_PACKAGE_NAME / "BUILD"
        package_id = PackageIdentifier.in_main(DEFAULTS_PACKAGE_NAME)
        builder = PackageBuilder(package_id, filename, implicit_input_files=False)
        alias = self.rule_class_provider.get("alias") if "alias" in self.rule_class_provider else _ALIAS
        for name, actual in sorted(self.rule_class_provider.defaults_package_content.items()):
            builder.add_rule(alias, {"name": name, "actual": actual})
        return builder.build()

    # Invalidation

    @staticmethod
    def _affects(changed: Path, key: NodeKey) -> bool:
        path: Path = key.key
        if changed == path:
            return True
        if key.kind == "listing" and path in changed.parents:
            return True
        return changed in path.parents

    def _remove_transitively(self, keys: list[NodeKey]) -> set[NodeKey]:
        removed: set[NodeKey] = set()
        pending = list(keys)
        while pending:
            key = pending.pop()
            if key in removed:
                continue
            node = self._nodes.pop(key, None)
            if node is None:
                continue
            removed.add(key)
            pending.extend(node.rdeps)
            lock = self._package_locks.get(key)
            if lock is not None and not lock.locked():
                del self._package_locks[key]
            for dep in node.deps:
                dep_node = self._nodes.get(dep)
                if dep_node is not None:
                    dep_node.rdeps.discard(key)
        return removed

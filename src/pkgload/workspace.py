"""Workspace layout: finding roots, BUILD files, packages and repositories."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from .labels import EXTERNAL_PACKAGE_IDENTIFIER, LabelSyntaxError, PackageIdentifier, RepositoryName
from .packages import Package, PackageBuilder
from .rules import Attribute, RuleClass
from .semantics import SAFE_BUILTINS, EvaluationError, SemanticsConfig, execute_tree, parse_source

WORKSPACE_FILE_NAMES = ("WORKSPACE.bazel", "WORKSPACE")


class WorkspaceNotFoundError(Exception):
    """Raised when no WORKSPACE file exists at or above a directory."""

    pass


LOCAL_REPOSITORY = RuleClass("local_repository", (Attribute("path", "string", mandatory=True),))


@dataclass(frozen=True)
class RepositoryRule:
    """A repository declared in the WORKSPACE file."""

    name: str
    rule_class: str
    path: Path


@dataclass
class WorkspaceDefinition:
    """Result of evaluating a WORKSPACE file."""

    filename: Path | None
    workspace_name: str = ""
    repositories: dict[str, RepositoryRule] = field(default_factory=dict)

    def repository_root(self, repository: RepositoryName) -> Path | None:
        rule = self.repositories.get(repository.name)
        return rule.path if rule else None


def find_workspace_file(root: Path) -> Path | None:
    for name in WORKSPACE_FILE_NAMES:
        candidate = root / name
        if candidate.is_file():
            return candidate
    return None


def find_workspace_root(start: str | Path) -> Path:
    """Walk up from start to the closest directory holding a WORKSPACE file.

    Raises:
        WorkspaceNotFoundError: If no ancestor has one
    """
    current = Path(start).absolute()
    for directory in (current, *current.parents):
        if find_workspace_file(directory) is not None:
            return directory
    raise WorkspaceNotFoundError(f"No WORKSPACE file found at or above {current}")


def find_build_file(directory: Path, semantics: SemanticsConfig) -> Path | None:
    """Return the package's BUILD file, honouring the configured name order."""
    for name in semantics.build_file_names:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def _is_subpackage(directory: Path, semantics: SemanticsConfig) -> bool:
    return any((directory / name).is_file() for name in semantics.build_file_names)


def list_package_files(directory: Path, semantics: SemanticsConfig) -> list[str]:
    """List files of a package as sorted posix paths relative to its directory.

    Directories holding their own BUILD file are separate packages and are
    not descended into.
    """
    files = []
    for dirpath, dirnames, filenames in os.walk(directory):
        current = Path(dirpath)
        dirnames[:] = sorted(d for d in dirnames if not _is_subpackage(current / d, semantics))
        for name in filenames:
            files.append((current / name).relative_to(directory).as_posix())
    return sorted(files)


def discover_packages(root: str | Path, semantics: SemanticsConfig) -> list[PackageIdentifier]:
    """Find every package of the main repository below root."""
    root = Path(root).absolute()
    found = []
    for dirpath, dirnames, _ in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        directory = Path(dirpath)
        if find_build_file(directory, semantics) is None:
            continue
        relative = directory.relative_to(root).as_posix()
        try:
            found.append(PackageIdentifier.in_main("" if relative == "." else relative))
        except LabelSyntaxError:
            # Directory names that can't be package paths aren't packages
            continue
    return sorted(found)


def evaluate_workspace_file(source: str, filename: Path, root: Path) -> WorkspaceDefinition:
    """Evaluate WORKSPACE content.

    Args:
        source: WORKSPACE file content
        filename: Path of the WORKSPACE file
        root: Workspace root that relative repository paths resolve against

    Returns:
        The workspace name and declared repositories

    Raises:
        EvaluationError: If the file is malformed
    """
    definition = WorkspaceDefinition(filename=filename)

    def workspace(name):
        if definition.repositories:
            raise EvaluationError("workspace() must be the first call in the WORKSPACE file")
        definition.workspace_name = name

    def local_repository(name, path):
        if name in definition.repositories:
            raise EvaluationError(f"repository '{name}' is declared twice")
        try:
            RepositoryName.parse(f"@{name}")
        except LabelSyntaxError as e:
            raise EvaluationError(str(e)) from e
        repo_path = Path(path)
        if not repo_path.is_absolute():
            repo_path = root / repo_path
        definition.repositories[name] = RepositoryRule(name, LOCAL_REPOSITORY.name, repo_path)

    tree = parse_source(source, str(filename), allow_def=False)
    namespace = {"__builtins__": {}}
    namespace.update(SAFE_BUILTINS)
    namespace.update(workspace=workspace, local_repository=local_repository)
    execute_tree(tree, str(filename), namespace)
    return definition


def build_external_package(definition: WorkspaceDefinition, root: Path) -> Package:
    """Build //external: one rule per declared repository."""
    filename = definition.filename or root / WORKSPACE_FILE_NAMES[-1]
    builder = PackageBuilder(EXTERNAL_PACKAGE_IDENTIFIER, filename, implicit_input_files=False)
    for rule in definition.repositories.values():
        builder.add_rule(LOCAL_REPOSITORY, {"name": rule.name, "path": str(rule.path)})
    return builder.build()

"""Packages, targets and the builder both loaders use to assemble them."""

from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Any, Mapping, Protocol

from .labels import Label, LabelSyntaxError, PackageIdentifier
from .rules import LABEL_TYPES, RuleClass


class NoSuchPackageError(Exception):
    """Raised when a package cannot be found or loaded."""

    def __init__(self, package_id: PackageIdentifier, message: str):
        self.package_id = package_id
        super().__init__(f"no such package '{package_id}': {message}")


class BuildFileContainsErrorsError(NoSuchPackageError):
    """Raised when a package's BUILD file (or a file it loads) fails to evaluate."""

    pass


class LoadInterruptedError(Exception):
    """Raised when a load is interrupted before it completes."""

    pass


class PackageBuildError(Exception):
    """Raised when a target can't be added to a package under construction."""

    pass


# Labels in these attributes never name files of the package
_NON_FILE_ATTRIBUTES = {"visibility"}


@dataclass
class Target:
    """Base class for everything that lives in a package."""

    label: Label

    @property
    def name(self) -> str:
        return self.label.name

    @property
    def kind(self) -> str:
        raise NotImplementedError


@dataclass
class Rule(Target):
    rule_class: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)
    label_attributes: tuple[str, ...] = ()

    @property
    def kind(self) -> str:
        return f"{self.rule_class} rule"


@dataclass
class InputFile(Target):
    visibility: list[str] = field(default_factory=list)

    @property
    def kind(self) -> str:
        return "source file"


@dataclass
class OutputFile(Target):
    generating_rule: Label | None = None

    @property
    def kind(self) -> str:
        return "generated file"


@dataclass
class PackageGroup(Target):
    packages: list[str] = field(default_factory=list)
    includes: list[str] = field(default_factory=list)

    @property
    def kind(self) -> str:
        return "package group"


@dataclass(frozen=True)
class Package:
    """A fully loaded package.

    Attributes:
        package_id: Identifier of the package
        filename: Absolute path of the package's BUILD file
        targets: Target name -> Target (read-only)
        default_visibility: Visibility set by package(), if any
    """

    package_id: PackageIdentifier
    filename: Path
    targets: Mapping[str, Target]
    default_visibility: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.package_id.package_path

    @property
    def name_fragment(self) -> PurePosixPath:
        return PurePosixPath(self.package_id.package_path)

    def get_target(self, name: str) -> Target:
        if name not in self.targets:
            raise KeyError(f"no target '{name}' in package '{self.package_id}'")
        return self.targets[name]

    def labels(self) -> frozenset[Label]:
        return frozenset(target.label for target in self.targets.values())

    def __repr__(self) -> str:
        return f"Package({self.package_id}, {len(self.targets)} targets)"


class LoadingCompleteHook(Protocol):
    """Capability invoked once for every package a loader finishes building."""

    def on_loading_complete(self, package: Package, semantics: Any) -> None: ...


class PackageBuilder:
    """Mutable package under construction.

    A builder is filled in by BUILD-file evaluation and turned into an
    immutable Package by build(). It is not reused afterwards.
    """

    def __init__(self, package_id: PackageIdentifier, filename: Path, implicit_input_files: bool = True):
        self.package_id = package_id
        self.filename = Path(filename)
        self.implicit_input_files = implicit_input_files
        self.default_visibility: tuple[str, ...] | None = None
        self._targets: dict[str, Target] = {}
        self._built = False
        # The BUILD file is a target of its own package
        self._add(InputFile(self._label(self.filename.name)))

    @property
    def package_directory(self) -> Path:
        return self.filename.parent

    def _label(self, name: str) -> Label:
        try:
            return Label(self.package_id, name)
        except LabelSyntaxError as e:
            raise PackageBuildError(str(e)) from e

    def _add(self, target: Target) -> None:
        if self._built:
            raise PackageBuildError(f"package '{self.package_id}' is already built")
        existing = self._targets.get(target.name)
        if existing is not None:
            raise PackageBuildError(
                f"{target.kind} '{target.name}' conflicts with existing {existing.kind}"
            )
        self._targets[target.name] = target

    def has_rules(self) -> bool:
        return any(isinstance(t, (Rule, PackageGroup)) for t in self._targets.values())

    def set_default_visibility(self, visibility: list[str]) -> None:
        if self.default_visibility is not None:
            raise PackageBuildError("package() may only be called once")
        if self.has_rules():
            raise PackageBuildError("package() must be called before any rule")
        self.default_visibility = tuple(visibility)

    def add_rule(self, rule_class: RuleClass, values: dict[str, Any]) -> Rule:
        """Create a rule (and its declared outputs) in this package."""
        attributes = rule_class.check_attributes(values)
        types = {name: rule_class.attribute(name).type for name in attributes}
        rule = Rule(
            self._label(attributes["name"]),
            rule_class=rule_class.name,
            attributes=attributes,
            label_attributes=tuple(n for n, t in types.items() if t in LABEL_TYPES),
        )
        self._add(rule)
        for name, attr_type in types.items():
            if attr_type == "output_list":
                for out in attributes[name]:
                    self._add(OutputFile(self._label(out), generating_rule=rule.label))
        return rule

    def add_package_group(self, name: str, packages: list[str], includes: list[str]) -> PackageGroup:
        group = PackageGroup(self._label(name), packages=list(packages), includes=list(includes))
        self._add(group)
        return group

    def export_files(self, names: list[str], visibility: list[str] | None = None) -> None:
        for name in names:
            existing = self._targets.get(name)
            if existing is None:
                self._add(InputFile(self._label(name), visibility=list(visibility or [])))
            elif isinstance(existing, InputFile):
                existing.visibility = list(visibility or existing.visibility)
            else:
                raise PackageBuildError(
                    f"exports_files: '{name}' conflicts with existing {existing.kind}"
                )

    def existing_rule_names(self) -> list[str]:
        return [t.name for t in self._targets.values() if isinstance(t, Rule)]

    def _create_implicit_input_files(self) -> None:
        referenced: list[str] = []
        for target in list(self._targets.values()):
            if not isinstance(target, Rule):
                continue
            for attr_name in target.label_attributes:
                value = target.attributes.get(attr_name)
                if attr_name in _NON_FILE_ATTRIBUTES or value is None:
                    continue
                for text in value if isinstance(value, list) else [value]:
                    try:
                        label = Label.parse(text, relative_to=self.package_id)
                    except LabelSyntaxError as e:
                        raise PackageBuildError(
                            f"invalid label '{text}' in attribute '{attr_name}' of {target.label}: {e}"
                        ) from e
                    if label.package_id == self.package_id:
                        referenced.append(label.name)
        for name in referenced:
            if name not in self._targets:
                self._targets[name] = InputFile(self._label(name))

    def build(self) -> Package:
        """Freeze the builder into a Package."""
        if self.implicit_input_files:
            self._create_implicit_input_files()
        self._built = True
        return Package(
            package_id=self.package_id,
            filename=self.filename,
            targets=MappingProxyType(dict(self._targets)),
            default_visibility=self.default_visibility or (),
        )

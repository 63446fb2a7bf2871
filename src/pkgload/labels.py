"""Repository names, package identifiers and target labels.

Labels follow the usual build-language syntax:

    //a/b:name          target "name" in package a/b of the main repository
    //a/b               shorthand for //a/b:b
    :name / name        target in the package the label is relative to
    @repo//a/b:name     target in an external repository
"""

from dataclasses import dataclass
from pathlib import PurePosixPath


class LabelSyntaxError(ValueError):
    """Raised when a label, package path or target name is malformed."""

    pass


@dataclass(frozen=True, order=True)
class RepositoryName:
    """Name of a repository. The empty name is the main repository."""

    name: str = ""

    @property
    def is_main(self) -> bool:
        return self.name == ""

    @classmethod
    def parse(cls, text: str) -> "RepositoryName":
        """Parse "@repo", "@" or "" into a repository name."""
        if text in ("", "@"):
            return MAIN_REPOSITORY
        if not text.startswith("@"):
            raise LabelSyntaxError(f"repository name must start with '@': {text!r}")
        name = text[1:]
        if not name.replace("_", "").replace("-", "").replace(".", "").isalnum():
            raise LabelSyntaxError(f"invalid repository name: {text!r}")
        return cls(name)

    def __str__(self) -> str:
        return f"@{self.name}" if self.name else ""


MAIN_REPOSITORY = RepositoryName("")


def _validate_package_path(path: str) -> str:
    if path.startswith("/") or path.endswith("/"):
        raise LabelSyntaxError(f"package path may not start or end with '/': {path!r}")
    if path and any(seg in ("", ".", "..") for seg in path.split("/")):
        raise LabelSyntaxError(f"invalid package path: {path!r}")
    if ":" in path or "@" in path:
        raise LabelSyntaxError(f"invalid character in package path: {path!r}")
    return path


def _validate_target_name(name: str) -> str:
    if not name:
        raise LabelSyntaxError("empty target name")
    if name.startswith("/") or name.endswith("/"):
        raise LabelSyntaxError(f"target name may not start or end with '/': {name!r}")
    if any(seg in ("", ".", "..") for seg in name.split("/")):
        raise LabelSyntaxError(f"invalid target name: {name!r}")
    if ":" in name:
        raise LabelSyntaxError(f"target name may not contain ':': {name!r}")
    return name


@dataclass(frozen=True, order=True)
class PackageIdentifier:
    """A package: repository plus path relative to the repository root."""

    repository: RepositoryName
    package_path: str

    def __post_init__(self):
        _validate_package_path(self.package_path)

    @classmethod
    def in_main(cls, package_path: str) -> "PackageIdentifier":
        return cls(MAIN_REPOSITORY, package_path)

    @classmethod
    def parse(cls, text: str) -> "PackageIdentifier":
        """Parse "//a/b", "@repo//a/b" or a bare "a/b" (main repository)."""
        if "//" not in text:
            return cls.in_main(text)
        repo_text, _, path = text.partition("//")
        return cls(RepositoryName.parse(repo_text), path)

    @property
    def name_parts(self) -> tuple[str, ...]:
        """Path segments of the package path; empty for the root package."""
        return PurePosixPath(self.package_path).parts if self.package_path else ()

    def __str__(self) -> str:
        return f"{self.repository}//{self.package_path}"


EXTERNAL_PACKAGE_IDENTIFIER = PackageIdentifier.in_main("external")


@dataclass(frozen=True, order=True)
class Label:
    """Globally unique identifier of a target."""

    package_id: PackageIdentifier
    name: str

    def __post_init__(self):
        _validate_target_name(self.name)

    @property
    def repository(self) -> RepositoryName:
        return self.package_id.repository

    @property
    def package_path(self) -> str:
        return self.package_id.package_path

    @classmethod
    def parse(cls, text: str, relative_to: PackageIdentifier | None = None) -> "Label":
        """Parse a label string.

        Args:
            text: Label text, absolute or relative
            relative_to: Package that relative labels (":x", "x") belong to

        Returns:
            The parsed Label

        Raises:
            LabelSyntaxError: If the text is malformed or relative without context
        """
        if not text:
            raise LabelSyntaxError("empty label")

        if "//" in text:
            repo_text, _, rest = text.partition("//")
            repository = RepositoryName.parse(repo_text)
            path, sep, name = rest.partition(":")
            if not sep:
                name = path.rsplit("/", 1)[-1]
            return cls(PackageIdentifier(repository, path), name)

        if text.startswith("@"):
            # "@repo" alone means @repo//:repo
            repository = RepositoryName.parse(text)
            return cls(PackageIdentifier(repository, ""), repository.name)

        if relative_to is None:
            raise LabelSyntaxError(f"relative label {text!r} needs a package context")
        name = text[1:] if text.startswith(":") else text
        return cls(relative_to, name)

    def __str__(self) -> str:
        return f"{self.package_id}:{self.name}"

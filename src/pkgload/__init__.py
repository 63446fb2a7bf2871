"""pkgload: BUILD-file package loading with two independent loaders.

The PackageGraph is an incremental, graph-based loader; the StandaloneLoader
is a simple batch loader. Tests cross-check them with the
CrossLoaderConsistencyChecker hook.

Example usage:
    from pkgload import PackageGraph, StandaloneLoader

    graph = PackageGraph("/path/to/workspace")
    pkg = graph.get_package("//app/server")
    for label in sorted(pkg.labels()):
        print(label)
"""

__version__ = "0.1.0"

from .graph import DEFAULTS_PACKAGE_NAME, PackageGraph, is_defaults_package
from .labels import (
    EXTERNAL_PACKAGE_IDENTIFIER,
    MAIN_REPOSITORY,
    Label,
    LabelSyntaxError,
    PackageIdentifier,
    RepositoryName,
)
from .packages import (
    BuildFileContainsErrorsError,
    InputFile,
    LoadingCompleteHook,
    LoadInterruptedError,
    NoSuchPackageError,
    OutputFile,
    Package,
    PackageGroup,
    Rule,
    Target,
)
from .rules import Attribute, RuleClass, RuleClassProvider, default_rule_class_provider
from .semantics import BuildFileEvaluator, EvaluationError, SemanticsConfig
from .standalone import StandaloneLoader

__all__ = [
    # Labels
    "Label",
    "LabelSyntaxError",
    "PackageIdentifier",
    "RepositoryName",
    "MAIN_REPOSITORY",
    "EXTERNAL_PACKAGE_IDENTIFIER",
    # Packages
    "Package",
    "Target",
    "Rule",
    "InputFile",
    "OutputFile",
    "PackageGroup",
    "LoadingCompleteHook",
    "NoSuchPackageError",
    "BuildFileContainsErrorsError",
    "LoadInterruptedError",
    # Rules & semantics
    "Attribute",
    "RuleClass",
    "RuleClassProvider",
    "default_rule_class_provider",
    "SemanticsConfig",
    "BuildFileEvaluator",
    "EvaluationError",
    # Loaders
    "PackageGraph",
    "StandaloneLoader",
    "DEFAULTS_PACKAGE_NAME",
    "is_defaults_package",
]

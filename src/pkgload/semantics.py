"""Build-language semantics: configuration and BUILD / .bzl evaluation.

BUILD and .bzl files are written in a restricted subset of Python syntax.
Source is parsed with the ast module, checked against the restrictions and
executed in a namespace that only holds the build-language builtins.
"""

import ast
import logging
import re
import threading
import traceback
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Callable, Sequence

from pydantic import BaseModel, ConfigDict, Field

from .labels import Label, LabelSyntaxError, PackageIdentifier
from .packages import PackageBuildError, PackageBuilder
from .rules import RuleClassProvider, RuleError

logger = logging.getLogger(__name__)


class SemanticsConfig(BaseModel):
    """Options that change how BUILD and .bzl files are interpreted."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    build_file_names: tuple[str, ...] = Field(default=("BUILD.bazel", "BUILD"), min_length=1)
    incompatible_disallow_glob: bool = False
    incompatible_disallow_load_statements: bool = False
    implicit_input_files: bool = True


DEFAULT_SEMANTICS = SemanticsConfig()


class EvaluationError(Exception):
    """Raised when a BUILD or .bzl file fails to evaluate."""

    def __init__(self, message: str, filename: str | None = None, line: int | None = None):
        self.filename = filename
        self.line = line
        location = ""
        if filename:
            location = f"{filename}:{line}: " if line else f"{filename}: "
        super().__init__(f"{location}{message}")


@dataclass(frozen=True)
class LoadStatement:
    """A top-level load() call: module label plus local name -> exported name."""

    module: str
    symbols: dict[str, str]
    line: int


_FORBIDDEN_NODES = {
    ast.Import: "import",
    ast.ImportFrom: "import",
    ast.ClassDef: "class",
    ast.While: "while",
    ast.With: "with",
    ast.AsyncWith: "with",
    ast.Try: "try",
    ast.Global: "global",
    ast.Nonlocal: "nonlocal",
    ast.AsyncFunctionDef: "async def",
    ast.Await: "await",
    ast.Yield: "yield",
    ast.YieldFrom: "yield",
    ast.Delete: "del",
}

# Attribute prefixes that reach interpreter internals
_PRIVATE_ATTRIBUTE_PREFIXES = ("_", "gi_", "cr_", "ag_", "f_", "co_", "tb_")


def is_private_attribute(name: str) -> bool:
    return name.startswith(_PRIVATE_ATTRIBUTE_PREFIXES)


def _getattr(value: Any, name: str, *default: Any) -> Any:
    if not isinstance(name, str) or is_private_attribute(name):
        raise EvaluationError(f"getattr(): private attribute '{name}' is not accessible")
    return getattr(value, name, *default)


def _hasattr(value: Any, name: str) -> bool:
    if not isinstance(name, str) or is_private_attribute(name):
        raise EvaluationError(f"hasattr(): private attribute '{name}' is not accessible")
    return hasattr(value, name)


SAFE_BUILTINS = {
    "True": True,
    "False": False,
    "None": None,
    "len": len,
    "list": list,
    "dict": dict,
    "str": str,
    "int": int,
    "bool": bool,
    "tuple": tuple,
    "range": range,
    "sorted": sorted,
    "reversed": reversed,
    "enumerate": enumerate,
    "zip": zip,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "hasattr": _hasattr,
    "getattr": _getattr,
    "type": lambda value: type(value).__name__,
}


def parse_source(source: str, filename: str, allow_def: bool) -> ast.Module:
    """Parse source and reject constructs outside the build language."""
    try:
        tree = ast.parse(source, filename=filename)
    except SyntaxError as e:
        raise EvaluationError(f"syntax error: {e.msg}", filename, e.lineno) from e

    for node in ast.walk(tree):
        construct = _FORBIDDEN_NODES.get(type(node))
        if construct is None and isinstance(node, ast.FunctionDef) and not allow_def:
            construct = "def (functions may only be defined in .bzl files)"
        if construct is not None:
            raise EvaluationError(f"'{construct}' is not allowed", filename, node.lineno)
        if isinstance(node, ast.Attribute) and is_private_attribute(node.attr):
            raise EvaluationError(f"private attribute '{node.attr}' is not accessible", filename, node.lineno)
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise EvaluationError(f"name '{node.id}' is not allowed", filename, node.lineno)
        if isinstance(node, ast.keyword) and node.arg and node.arg.startswith("_"):
            raise EvaluationError(f"keyword '{node.arg}' is not allowed", filename, node.value.lineno)
    return tree


def _is_load_call(node: ast.stmt) -> bool:
    return (
        isinstance(node, ast.Expr)
        and isinstance(node.value, ast.Call)
        and isinstance(node.value.func, ast.Name)
        and node.value.func.id == "load"
    )


def _string_constant(node: ast.expr, filename: str) -> str:
    if not isinstance(node, ast.Constant) or not isinstance(node.value, str):
        raise EvaluationError("load() arguments must be string literals", filename, node.lineno)
    return node.value


def _split_loads(tree: ast.Module, filename: str) -> tuple[list[LoadStatement], ast.Module]:
    loads = []
    body = []
    for node in tree.body:
        if not _is_load_call(node):
            body.append(node)
            continue
        call = node.value
        if not call.args:
            raise EvaluationError("load() needs a module label", filename, node.lineno)
        module = _string_constant(call.args[0], filename)
        symbols = {}
        for arg in call.args[1:]:
            name = _string_constant(arg, filename)
            symbols[name] = name
        for kw in call.keywords:
            symbols[kw.arg] = _string_constant(kw.value, filename)
        if not symbols:
            raise EvaluationError("load() needs at least one symbol", filename, node.lineno)
        for local in symbols:
            if local.startswith("_"):
                raise EvaluationError(f"cannot load private symbol '{local}'", filename, node.lineno)
        loads.append(LoadStatement(module=module, symbols=symbols, line=node.lineno))
    stripped = ast.Module(body=body, type_ignores=[])
    return loads, stripped


def resolve_load_label(statement: LoadStatement, package_id: PackageIdentifier, filename: str) -> Label:
    """Resolve the module of a load() statement to the label of a .bzl file."""
    try:
        label = Label.parse(statement.module, relative_to=package_id)
    except LabelSyntaxError as e:
        raise EvaluationError(f"invalid load label: {e}", filename, statement.line) from e
    if not label.name.endswith(".bzl"):
        raise EvaluationError(f"load() expects a .bzl file, got '{label}'", filename, statement.line)
    return label


def bind_loaded_symbols(
    statement: LoadStatement, label: Label, exported: dict[str, Any], filename: str
) -> dict[str, Any]:
    """Pick the symbols a load() statement asks for out of a module's exports."""
    bound = {}
    for local, name in statement.symbols.items():
        if name not in exported:
            raise EvaluationError(f"file '{label}' does not contain symbol '{name}'", filename, statement.line)
        bound[local] = exported[name]
    return bound


def _error_line(exc: BaseException, filename: str) -> int | None:
    line = None
    for frame in traceback.extract_tb(exc.__traceback__):
        if frame.filename == filename:
            line = frame.lineno
    return line


def execute_tree(tree: ast.Module, filename: str, namespace: dict[str, Any]) -> None:
    code = compile(tree, filename, "exec")
    try:
        exec(code, namespace)
    except EvaluationError as e:
        if e.filename is not None:
            raise
        raise EvaluationError(str(e), filename, _error_line(e, filename)) from e
    except (RuleError, PackageBuildError, LabelSyntaxError) as e:
        raise EvaluationError(str(e), filename, _error_line(e, filename)) from e
    except Exception as e:
        raise EvaluationError(f"{type(e).__name__}: {e}", filename, _error_line(e, filename)) from e


def glob_to_regex(pattern: str) -> re.Pattern:
    """Translate a glob pattern ("*", "?", "**") into a regex over posix paths."""
    regex = ""
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            regex += "(?:.*/)?"
            i += 3
        elif pattern.startswith("**", i):
            regex += ".*"
            i += 2
        elif pattern[i] == "*":
            regex += "[^/]*"
            i += 1
        elif pattern[i] == "?":
            regex += "[^/]"
            i += 1
        else:
            regex += re.escape(pattern[i])
            i += 1
    return re.compile(f"^{regex}$")


# Builder of the BUILD file currently being evaluated on this thread
_state = threading.local()


def _current_builder() -> PackageBuilder:
    builder = getattr(_state, "builder", None)
    if builder is None:
        raise EvaluationError("native functions can only be called while a BUILD file is evaluated")
    return builder


class _Native:
    """The `native` module visible to .bzl macros."""

    def __init__(self, evaluator: "BuildFileEvaluator"):
        self._evaluator = evaluator

    def __getattr__(self, name: str) -> Callable:
        functions = self._evaluator._package_functions(_current_builder(), _state.list_files)
        if name not in functions:
            raise AttributeError(f"native has no function '{name}'")
        return functions[name]


def _fail(msg: Any = "", attr: str | None = None) -> None:
    raise EvaluationError(f"{attr}: {msg}" if attr else str(msg))


class BuildFileEvaluator:
    """Evaluates BUILD and .bzl source against a rule-class provider.

    Example:
        evaluator = BuildFileEvaluator(default_rule_class_provider(), SemanticsConfig())
        loads = evaluator.extract_loads(source, "pkg/BUILD")
        evaluator.evaluate_build_file(builder, source, loaded={}, list_files=lambda: [])
        package = builder.build()
    """

    def __init__(self, rule_class_provider: RuleClassProvider, semantics: SemanticsConfig | None = None):
        self.rule_class_provider = rule_class_provider
        self.semantics = semantics or DEFAULT_SEMANTICS
        self.native = _Native(self)

    def extract_loads(self, source: str, filename: str) -> list[LoadStatement]:
        """Return the load() statements of a file without evaluating it."""
        tree = parse_source(source, filename, allow_def=True)
        loads, _ = _split_loads(tree, filename)
        if loads and self.semantics.incompatible_disallow_load_statements:
            raise EvaluationError("load() statements are disabled", filename, loads[0].line)
        return loads

    def _base_namespace(self) -> dict[str, Any]:
        namespace: dict[str, Any] = {"__builtins__": {}}
        namespace.update(SAFE_BUILTINS)
        namespace["fail"] = _fail
        namespace["struct"] = lambda **kwargs: SimpleNamespace(**kwargs)
        namespace["print"] = lambda *args: logger.info("DEBUG: %s", " ".join(str(a) for a in args))
        namespace["native"] = self.native
        return namespace

    def evaluate_extension(self, source: str, filename: str, loaded: dict[str, Any]) -> dict[str, Any]:
        """Evaluate a .bzl file and return its public globals.

        Args:
            source: File content
            filename: Name used in error messages
            loaded: Symbols bound by the file's load() statements

        Returns:
            Exported name -> value
        """
        tree = parse_source(source, filename, allow_def=True)
        _, body = _split_loads(tree, filename)
        namespace = self._base_namespace()
        base_names = set(namespace)
        namespace.update(loaded)
        execute_tree(body, filename, namespace)
        return {
            name: value
            for name, value in namespace.items()
            if not name.startswith("_") and name not in base_names and name not in loaded
        }

    def evaluate_build_file(
        self,
        builder: PackageBuilder,
        source: str,
        loaded: dict[str, Any],
        list_files: Callable[[], Sequence[str]],
    ) -> None:
        """Evaluate a BUILD file, adding its targets to builder.

        Args:
            builder: Package under construction
            source: BUILD file content
            loaded: Symbols bound by the file's load() statements
            list_files: Returns the package's files (relative posix paths) for glob()

        Raises:
            EvaluationError: If evaluation fails
        """
        filename = str(builder.filename)
        tree = parse_source(source, filename, allow_def=False)
        _, body = _split_loads(tree, filename)

        namespace = self._base_namespace()
        namespace.update(self._package_functions(builder, list_files))
        namespace.update(loaded)

        previous = (getattr(_state, "builder", None), getattr(_state, "list_files", None))
        _state.builder, _state.list_files = builder, list_files
        try:
            execute_tree(body, filename, namespace)
        finally:
            _state.builder, _state.list_files = previous

    def _package_functions(
        self, builder: PackageBuilder, list_files: Callable[[], Sequence[str]]
    ) -> dict[str, Callable]:
        functions: dict[str, Callable] = {}

        for rule_class in self.rule_class_provider:

            def rule_function(*args, _rule_class=rule_class, **kwargs):
                if args:
                    raise EvaluationError(f"{_rule_class.name}() only accepts keyword arguments")
                builder.add_rule(_rule_class, kwargs)

            functions[rule_class.name] = rule_function

        def glob(include, exclude=None, exclude_directories=1, allow_empty=True):
            if self.semantics.incompatible_disallow_glob:
                raise EvaluationError("glob() is disabled by --incompatible_disallow_glob")
            includes = [glob_to_regex(p) for p in include]
            excludes = [glob_to_regex(p) for p in exclude or []]
            matches = [
                path
                for path in list_files()
                if any(r.match(path) for r in includes) and not any(r.match(path) for r in excludes)
            ]
            if not matches and not allow_empty:
                raise EvaluationError(f"glob pattern(s) {list(include)} didn't match anything")
            return sorted(matches)

        def exports_files(srcs, visibility=None, licenses=None):
            builder.export_files(list(srcs), visibility)

        def package(default_visibility=None, **kwargs):
            builder.set_default_visibility(list(default_visibility or []))

        def package_group(name, packages=None, includes=None):
            builder.add_package_group(name, list(packages or []), list(includes or []))

        def existing_rules():
            return builder.existing_rule_names()

        functions.update(
            glob=glob,
            exports_files=exports_files,
            package=package,
            package_group=package_group,
            package_name=lambda: builder.package_id.package_path,
            repository_name=lambda: f"@{builder.package_id.repository.name}",
            existing_rules=existing_rules,
        )
        return functions

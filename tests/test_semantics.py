"""Tests for BUILD / .bzl evaluation."""

from pathlib import Path

import pytest

from pkgload.labels import Label, PackageIdentifier
from pkgload.packages import InputFile, OutputFile, PackageBuilder, Rule
from pkgload.rules import default_rule_class_provider
from pkgload.semantics import (
    DEFAULT_SEMANTICS,
    BuildFileEvaluator,
    EvaluationError,
    LoadStatement,
    SemanticsConfig,
    glob_to_regex,
)


def evaluate(source, semantics=None, files=(), loaded=None, package="pkg"):
    semantics = semantics or DEFAULT_SEMANTICS
    builder = PackageBuilder(
        PackageIdentifier.in_main(package),
        Path("/ws") / package / "BUILD",
        semantics.implicit_input_files,
    )
    evaluator = BuildFileEvaluator(default_rule_class_provider(), semantics)
    evaluator.evaluate_build_file(builder, source, loaded or {}, lambda: list(files))
    return builder.build()


class TestRules:
    def test_rule_and_implicit_input_file(self):
        pkg = evaluate('py_library(name = "lib", srcs = ["lib.py"])')
        assert set(pkg.targets) == {"BUILD", "lib", "lib.py"}
        assert isinstance(pkg.targets["lib"], Rule)
        assert isinstance(pkg.targets["lib.py"], InputFile)
        assert pkg.targets["lib"].kind == "py_library rule"

    def test_implicit_input_files_disabled(self):
        semantics = SemanticsConfig(implicit_input_files=False)
        pkg = evaluate('py_library(name = "lib", srcs = ["lib.py"])', semantics=semantics)
        assert set(pkg.targets) == {"BUILD", "lib"}

    def test_other_package_labels_are_not_input_files(self):
        pkg = evaluate('py_library(name = "lib", deps = ["//other:x", ":helper"])')
        assert set(pkg.targets) == {"BUILD", "lib", "helper"}

    def test_visibility_labels_are_not_input_files(self):
        pkg = evaluate('filegroup(name = "fg", visibility = [":friends"])')
        assert "friends" not in pkg.targets

    def test_genrule_outputs(self):
        pkg = evaluate('genrule(name = "gen", srcs = ["in.txt"], outs = ["out.txt"], cmd = "cp $< $@")')
        out = pkg.targets["out.txt"]
        assert isinstance(out, OutputFile)
        assert out.generating_rule == Label.parse("//pkg:gen")
        assert set(pkg.targets) == {"BUILD", "gen", "in.txt", "out.txt"}

    def test_reference_to_output_is_not_an_input_file(self):
        pkg = evaluate(
            'genrule(name = "gen", outs = ["gen.py"], cmd = "touch $@")\n'
            'py_library(name = "lib", srcs = [":gen.py"])\n'
        )
        assert isinstance(pkg.targets["gen.py"], OutputFile)

    def test_duplicate_target(self):
        with pytest.raises(EvaluationError, match="conflicts"):
            evaluate('filegroup(name = "a")\nfilegroup(name = "a")\n')

    def test_positional_arguments_rejected(self):
        with pytest.raises(EvaluationError, match="keyword arguments"):
            evaluate('py_library("lib")')

    def test_rule_attribute_errors(self):
        with pytest.raises(EvaluationError, match="unexpected attribute"):
            evaluate('filegroup(name = "a", bogus = 1)')

    def test_exports_files(self):
        pkg = evaluate('exports_files(["data.txt"], visibility = ["//visibility:public"])')
        assert pkg.targets["data.txt"].visibility == ["//visibility:public"]

    def test_package_group(self):
        pkg = evaluate('package_group(name = "friends", packages = ["//a/..."])')
        assert pkg.targets["friends"].kind == "package group"

    def test_package_default_visibility(self):
        pkg = evaluate('package(default_visibility = ["//visibility:public"])\nfilegroup(name = "a")\n')
        assert pkg.default_visibility == ("//visibility:public",)

    def test_package_after_rule(self):
        with pytest.raises(EvaluationError, match="before any rule"):
            evaluate('filegroup(name = "a")\npackage(default_visibility = [])\n')

    def test_package_name(self):
        pkg = evaluate('filegroup(name = package_name().replace("/", "_"))', package="a/b")
        assert "a_b" in pkg.targets


class TestGlob:
    FILES = ["BUILD", "a.py", "b.py", "sub/c.py", "README"]

    def test_glob(self):
        pkg = evaluate('filegroup(name = "srcs", srcs = glob(["*.py"]))', files=self.FILES)
        assert pkg.targets["srcs"].attributes["srcs"] == ["a.py", "b.py"]

    def test_recursive_glob_with_exclude(self):
        pkg = evaluate(
            'filegroup(name = "srcs", srcs = glob(["**/*.py"], exclude = ["b.py"]))',
            files=self.FILES,
        )
        assert pkg.targets["srcs"].attributes["srcs"] == ["a.py", "sub/c.py"]
        assert "sub/c.py" in pkg.targets

    def test_empty_glob_not_allowed(self):
        with pytest.raises(EvaluationError, match="didn't match"):
            evaluate('filegroup(name = "x", srcs = glob(["*.cc"], allow_empty = False))', files=self.FILES)

    def test_glob_disabled(self):
        semantics = SemanticsConfig(incompatible_disallow_glob=True)
        with pytest.raises(EvaluationError, match="glob\\(\\) is disabled"):
            evaluate('filegroup(name = "x", srcs = glob(["*.py"]))', semantics=semantics, files=self.FILES)

    def test_glob_to_regex(self):
        assert glob_to_regex("*.py").match("a.py")
        assert not glob_to_regex("*.py").match("sub/a.py")
        assert glob_to_regex("**/*.py").match("sub/deeper/a.py")
        assert glob_to_regex("data/**").match("data/x/y")
        assert glob_to_regex("?.txt").match("a.txt")
        assert not glob_to_regex("?.txt").match("ab.txt")


class TestRestrictions:
    @pytest.mark.parametrize(
        "source, message",
        [
            ("import os", "'import' is not allowed"),
            ("def f():\n    pass\n", "def"),
            ("x = ().__class__", "private attribute"),
            ("class A:\n    pass\n", "'class' is not allowed"),
            ("while True:\n    pass\n", "'while' is not allowed"),
            ("x = __import__", "not allowed"),
            ("py_library(name = 'x', _rule_class = 1)", "keyword '_rule_class' is not allowed"),
        ],
    )
    def test_rejected_constructs(self, source, message):
        with pytest.raises(EvaluationError, match=message):
            evaluate(source)

    def test_syntax_error(self):
        with pytest.raises(EvaluationError, match="syntax error"):
            evaluate("filegroup(name = ")

    def test_fail_reports_line(self):
        with pytest.raises(EvaluationError) as exc_info:
            evaluate('filegroup(name = "a")\nfail("boom")\n')
        assert exc_info.value.line == 2
        assert "boom" in str(exc_info.value)

    def test_undefined_name(self):
        with pytest.raises(EvaluationError, match="NameError"):
            evaluate("cc_library(name = 'x')")

    @pytest.mark.parametrize(
        "source",
        [
            'x = getattr(1, "__class__")',
            'x = getattr(getattr(1, "real"), "__class__")',
            'x = hasattr(1, "__subclasses__")',
            'x = getattr(1, "_private", None)',
        ],
    )
    def test_getattr_cannot_reach_private_attributes(self, source):
        with pytest.raises(EvaluationError, match="private attribute") as exc_info:
            evaluate(source)
        assert exc_info.value.line == 1

    def test_getattr_public_attributes(self):
        pkg = evaluate('filegroup(name = getattr("lib", "upper")())\nok = hasattr("x", "join")\n')
        assert "LIB" in pkg.targets

    def test_frame_attributes_rejected(self):
        with pytest.raises(EvaluationError, match="private attribute 'gi_frame'"):
            evaluate("g = (x for x in [1])\nframe = g.gi_frame\n")

    def test_open_is_not_available(self):
        with pytest.raises(EvaluationError, match="NameError"):
            evaluate("x = open('/etc/passwd')")


class TestLoadsAndExtensions:
    MACROS = (
        "def py_lib_with_test(name):\n"
        "    native.py_library(name = name, srcs = [name + '.py'])\n"
        "    native.py_test(name = name + '_test', srcs = [name + '_test.py'], deps = [':' + name])\n"
        "\n"
        "_private = 1\n"
        "VALUE = 3\n"
    )

    def test_extract_loads(self):
        evaluator = BuildFileEvaluator(default_rule_class_provider())
        loads = evaluator.extract_loads('load(":defs.bzl", "macro", alias = "other")\n', "BUILD")
        assert loads == [LoadStatement(":defs.bzl", {"macro": "macro", "alias": "other"}, 1)]

    def test_load_arguments_must_be_literals(self):
        evaluator = BuildFileEvaluator(default_rule_class_provider())
        with pytest.raises(EvaluationError, match="string literals"):
            evaluator.extract_loads('x = "m"\nload(":defs.bzl", x)\n', "BUILD")

    def test_private_symbols_cannot_be_loaded(self):
        evaluator = BuildFileEvaluator(default_rule_class_provider())
        with pytest.raises(EvaluationError, match="private symbol"):
            evaluator.extract_loads('load(":defs.bzl", "_private")\n', "BUILD")

    def test_load_disabled(self):
        evaluator = BuildFileEvaluator(
            default_rule_class_provider(), SemanticsConfig(incompatible_disallow_load_statements=True)
        )
        with pytest.raises(EvaluationError, match="disabled"):
            evaluator.extract_loads('load(":defs.bzl", "macro")\n', "BUILD")

    def test_extension_exports_public_globals(self):
        evaluator = BuildFileEvaluator(default_rule_class_provider())
        exported = evaluator.evaluate_extension(self.MACROS, "defs.bzl", {})
        assert set(exported) == {"py_lib_with_test", "VALUE"}

    def test_macro_creates_rules_in_calling_package(self):
        evaluator = BuildFileEvaluator(default_rule_class_provider())
        exported = evaluator.evaluate_extension(self.MACROS, "defs.bzl", {})
        pkg = evaluate(
            'load(":defs.bzl", "py_lib_with_test")\npy_lib_with_test(name = "x")\n',
            loaded={"py_lib_with_test": exported["py_lib_with_test"]},
        )
        assert set(pkg.targets) == {"BUILD", "x", "x.py", "x_test", "x_test.py"}

    def test_native_outside_build_evaluation(self):
        evaluator = BuildFileEvaluator(default_rule_class_provider())
        exported = evaluator.evaluate_extension(self.MACROS, "defs.bzl", {})
        with pytest.raises(EvaluationError, match="only be called while a BUILD file"):
            exported["py_lib_with_test"]("x")

    def test_def_allowed_only_in_extensions(self):
        evaluator = BuildFileEvaluator(default_rule_class_provider())
        assert "f" in evaluator.evaluate_extension("def f():\n    return 1\n", "defs.bzl", {})

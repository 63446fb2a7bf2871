"""Tests for the standalone loader."""

import threading

import pytest

from pkgload.graph import PackageGraph
from pkgload.labels import PackageIdentifier
from pkgload.packages import BuildFileContainsErrorsError, LoadInterruptedError, NoSuchPackageError
from pkgload.semantics import SemanticsConfig
from pkgload.standalone import StandaloneLoader

APP = PackageIdentifier.in_main("app")

WORKSPACE_FILES = {
    "defs/BUILD": "",
    "defs/common.bzl": 'PREFIX = "svc_"\n',
    "defs/left.bzl": 'load(":common.bzl", "PREFIX")\nLEFT = PREFIX + "left"\n',
    "defs/right.bzl": 'load(":common.bzl", "PREFIX")\nRIGHT = PREFIX + "right"\n',
    "app/BUILD": (
        'load("//defs:left.bzl", "LEFT")\n'
        'load("//defs:right.bzl", "RIGHT")\n'
        "filegroup(name = LEFT)\n"
        "filegroup(name = RIGHT)\n"
        'py_library(name = "lib", srcs = glob(["*.py"]))\n'
        'genrule(name = "gen", outs = ["gen.txt"], cmd = "touch $@")\n'
    ),
    "app/a.py": "",
    "app/b.py": "",
}


class TestLoadPackage:
    def test_loads_from_disk(self, make_workspace):
        root = make_workspace(WORKSPACE_FILES)
        pkg = StandaloneLoader(root).load_package(APP)
        assert set(pkg.targets) == {"BUILD", "svc_left", "svc_right", "lib", "a.py", "b.py", "gen", "gen.txt"}

    def test_agrees_with_package_graph(self, make_workspace):
        root = make_workspace(WORKSPACE_FILES)
        standalone = StandaloneLoader(root).load_package(APP)
        graph = PackageGraph(root).get_package(APP)
        assert standalone.labels() == graph.labels()

    def test_not_memoized(self, make_workspace):
        root = make_workspace({"app/BUILD": 'filegroup(name = "a")'})
        loader = StandaloneLoader(root)
        first = loader.load_package(APP)

        (root / "app" / "BUILD").write_text('filegroup(name = "b")')
        second = loader.load_package(APP)

        assert first is not second
        assert set(second.targets) == {"BUILD", "b"}

    def test_build_file_names(self, make_workspace):
        root = make_workspace({"app/BUILD": 'filegroup(name = "plain")', "app/BUILD.bazel": 'filegroup(name = "bazel")'})
        assert "bazel" in StandaloneLoader(root).load_package(APP).targets

        only_build = SemanticsConfig(build_file_names=("BUILD",))
        assert "plain" in StandaloneLoader(root, semantics=only_build).load_package(APP).targets

    def test_macro_from_local_repository(self, make_workspace):
        root = make_workspace(
            {
                "third_party/dep/defs/m.bzl": 'load(":n.bzl", "N")\ndef lib(name):\n    native.py_library(name = name + N)\n',
                "third_party/dep/defs/n.bzl": 'N = "_x"\n',
                "app/BUILD": 'load("@dep//defs:m.bzl", "lib")\nlib(name = "core")\n',
            },
            workspace='local_repository(name = "dep", path = "third_party/dep")\n',
        )
        pkg = StandaloneLoader(root).load_package(APP)
        assert set(pkg.targets) == {"BUILD", "core_x"}
        assert pkg.labels() == PackageGraph(root).get_package(APP).labels()

    def test_load_packages(self, make_workspace):
        root = make_workspace({"a/BUILD": "", "b/BUILD": ""})
        ids = [PackageIdentifier.in_main("a"), PackageIdentifier.in_main("b")]
        assert list(StandaloneLoader(root).load_packages(ids)) == ids


class TestErrors:
    def test_missing_package(self, make_workspace):
        root = make_workspace({})
        with pytest.raises(NoSuchPackageError) as exc_info:
            StandaloneLoader(root).load_package(APP)
        assert not isinstance(exc_info.value, BuildFileContainsErrorsError)
        assert exc_info.value.package_id == APP

    def test_external_repository_not_supported(self, make_workspace):
        root = make_workspace({})
        with pytest.raises(NoSuchPackageError, match="main-repository"):
            StandaloneLoader(root).load_package(PackageIdentifier.parse("@dep//lib"))

    def test_build_file_errors(self, make_workspace):
        root = make_workspace({"app/BUILD": 'fail("broken")'})
        with pytest.raises(BuildFileContainsErrorsError, match="broken"):
            StandaloneLoader(root).load_package(APP)

    def test_load_cycle(self, make_workspace):
        root = make_workspace(
            {
                "defs/a.bzl": 'load(":b.bzl", "B")\nA = 1\n',
                "defs/b.bzl": 'load(":a.bzl", "A")\nB = 1\n',
                "app/BUILD": 'load("//defs:a.bzl", "A")\n',
            }
        )
        with pytest.raises(BuildFileContainsErrorsError, match="cycle in load graph"):
            StandaloneLoader(root).load_package(APP)

    def test_load_from_undefined_repository(self, make_workspace):
        root = make_workspace({"app/BUILD": 'load("@nope//defs:m.bzl", "lib")\n'})
        with pytest.raises(BuildFileContainsErrorsError, match="repository '@nope' is not defined"):
            StandaloneLoader(root).load_package(APP)

    def test_missing_extension(self, make_workspace):
        root = make_workspace({"app/BUILD": 'load("//defs:nope.bzl", "X")\n'})
        with pytest.raises(BuildFileContainsErrorsError, match="no such file"):
            StandaloneLoader(root).load_package(APP)


class TestInterrupt:
    def test_interrupted_before_loading(self, make_workspace):
        root = make_workspace({"app/BUILD": ""})
        interrupt = threading.Event()
        interrupt.set()
        with pytest.raises(LoadInterruptedError):
            StandaloneLoader(root, interrupt=interrupt).load_package(APP)

    def test_unset_event_does_not_interrupt(self, make_workspace):
        root = make_workspace({"app/BUILD": 'filegroup(name = "a")'})
        loader = StandaloneLoader(root, interrupt=threading.Event())
        assert "a" in loader.load_package(APP).targets

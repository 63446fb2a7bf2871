from pathlib import Path

import pytest

from pkgload.testing import write_workspace

pytest_plugins = ("pkgload.testing",)


@pytest.fixture
def make_workspace(tmp_path: Path):
    """Build a workspace under tmp_path/ws from a path -> content mapping."""

    def make(files: dict[str, str], workspace: str = "") -> Path:
        return write_workspace(tmp_path / "ws", files, workspace)

    return make

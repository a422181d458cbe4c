import json
import os
import pathlib
import stat

import pytest

from dylib_embedder.errors import InspectError, RewriteError


class FakeBinaryTool:
    """Binary tool over JSON stand-ins for Mach-O files.

    Each fake binary is a JSON file ``{"install_name": ..., "dependencies": [...]}``,
    so copying the file carries its load names along, and writes respect the
    owner write bit the way ``install_name_tool`` would.
    """

    def __init__(self) -> None:
        self.mutations: list[tuple[str, str, str | None, str]] = []
        self.fail_on: set[str] = set()

    def install_name(self, path: pathlib.Path) -> str | None:
        return _load(path)["install_name"]

    def references(self, path: pathlib.Path) -> list[str]:
        return list(_load(path)["dependencies"])

    def change_reference(self, path: pathlib.Path, old: str, new: str) -> None:
        self._check_writable(path)
        data = _load(path)
        if old not in data["dependencies"]:
            raise RewriteError(f"{path} has no reference {old}")
        data["dependencies"] = [new if d == old else d for d in data["dependencies"]]
        path.write_text(json.dumps(data), encoding="utf-8")
        self.mutations.append(("change", path.name, old, new))

    def set_install_name(self, path: pathlib.Path, new: str) -> None:
        self._check_writable(path)
        data = _load(path)
        if data["install_name"] is None:
            raise RewriteError(f"{path} has no install name")
        old = data["install_name"]
        data["install_name"] = new
        path.write_text(json.dumps(data), encoding="utf-8")
        self.mutations.append(("id", path.name, old, new))

    def _check_writable(self, path: pathlib.Path) -> None:
        if path.name in self.fail_on:
            raise RewriteError(f"simulated failure on {path}")
        if stat.S_IMODE(os.stat(path).st_mode) & stat.S_IWUSR == 0:
            raise PermissionError(f"{path} is read-only")


def _load(path: pathlib.Path) -> dict:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise InspectError(f"cannot read {path}") from e


def write_binary(
    path: pathlib.Path,
    *,
    dependencies: list[str],
    install_name: str | None = None,
    mode: int = 0o644,
) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps({"install_name": install_name, "dependencies": dependencies}),
        encoding="utf-8",
    )
    os.chmod(path, mode)
    return path


def read_binary(path: pathlib.Path) -> dict:
    return _load(path)


@pytest.fixture
def fake_tool() -> FakeBinaryTool:
    return FakeBinaryTool()


@pytest.fixture
def prefix(tmp_path: pathlib.Path) -> pathlib.Path:
    p = tmp_path / "homebrew"
    p.mkdir()
    return p


@pytest.fixture
def bundle_exe(tmp_path: pathlib.Path) -> pathlib.Path:
    return tmp_path / "My.app" / "Contents" / "MacOS" / "my"

"""Binary metadata access.

Everything that knows about the Mach-O format lives here, behind the small
:class:`BinaryTool` protocol the embedder talks to:

- reading a binary's own install name and, separately, the dylibs it
  links against;
- changing one dependency reference;
- changing the binary's own install name.

Reads go through macholib by default, or through ``otool -D`` / ``otool -L``
text output.
Writes always go through ``install_name_tool``.
"""

from dataclasses import dataclass
import logging
import pathlib
import re
import struct
import subprocess
from typing import Protocol

from macholib.MachO import MachO
from macholib.mach_o import (
    LC_ID_DYLIB,
    LC_LAZY_LOAD_DYLIB,
    LC_LOAD_DYLIB,
    LC_LOAD_UPWARD_DYLIB,
    LC_LOAD_WEAK_DYLIB,
    LC_REEXPORT_DYLIB,
)

from dylib_embedder.errors import InspectError, RewriteError

_DEPENDENCY_COMMANDS: frozenset[int] = frozenset(
    {
        LC_LOAD_DYLIB,
        LC_LOAD_WEAK_DYLIB,
        LC_REEXPORT_DYLIB,
        LC_LAZY_LOAD_DYLIB,
        LC_LOAD_UPWARD_DYLIB,
    }
)


@dataclass(frozen=True, slots=True)
class DependencyReference:
    """A load name recorded in a binary.

    :ivar path: The reference exactly as recorded.
    :ivar directory: Everything before the last ``/``.
    :ivar leaf: The library's on-disk file name.
    """

    path: str
    directory: str
    leaf: str


class BinaryTool(Protocol):
    """Read and rewrite the load names recorded in a binary."""

    def install_name(self, path: pathlib.Path) -> str | None:
        ...

    def references(self, path: pathlib.Path) -> list[str]:
        ...

    def change_reference(self, path: pathlib.Path, old: str, new: str) -> None:
        ...

    def set_install_name(self, path: pathlib.Path, new: str) -> None:
        ...


def parse_reference(raw: str) -> DependencyReference | None:
    """Split a recorded load name into directory and leaf.

    :param raw: Load name as reported by the binary tool.
    :returns: Parsed reference, or ``None`` if it has no directory or no leaf.
    """

    path: str = raw.strip()
    directory, sep, leaf = path.rpartition("/")
    if sep == "" or leaf == "":
        return None
    if directory == "":
        directory = "/"
    return DependencyReference(path=path, directory=directory, leaf=leaf)


class InstallNameTool:
    """Mutations shared by every reader, implemented with ``install_name_tool``."""

    def __init__(self, *, install_name_tool: str = "install_name_tool") -> None:
        self._install_name_tool: str = install_name_tool

    def change_reference(self, path: pathlib.Path, old: str, new: str) -> None:
        """Rewrite one dependency reference in ``path``.

        :raises RewriteError: If ``install_name_tool`` fails.
        """

        _run_tool([self._install_name_tool, "-change", old, new, path.name], cwd=path.parent)

    def set_install_name(self, path: pathlib.Path, new: str) -> None:
        """Rewrite the install name (``LC_ID_DYLIB``) of ``path``.

        :raises RewriteError: If ``install_name_tool`` fails.
        """

        _run_tool([self._install_name_tool, "-id", new, path.name], cwd=path.parent)


class MachOTool(InstallNameTool):
    """Reads load commands with macholib."""

    def install_name(self, path: pathlib.Path) -> str | None:
        """Return the install name (``LC_ID_DYLIB``) of ``path``, if it has one.

        :raises InspectError: If the file is not a readable Mach-O binary.
        """

        identity, _dependencies = self._load_names(path)
        return identity

    def references(self, path: pathlib.Path) -> list[str]:
        """List the dylibs ``path`` links against.

        Fat binaries contribute each name once, in first-seen order. The
        binary's own install name is not included.

        :param path: Executable or dylib.
        :returns: Linked dylib names.
        :raises InspectError: If the file is not a readable Mach-O binary.
        """

        _identity, dependencies = self._load_names(path)
        return dependencies

    def _load_names(self, path: pathlib.Path) -> tuple[str | None, list[str]]:
        try:
            macho: MachO = MachO(str(path))
        except (OSError, ValueError, struct.error) as e:
            raise InspectError(f"Cannot read Mach-O load commands of {path}: {e}") from e

        identity: str | None = None
        seen: set[str] = set()
        dependencies: list[str] = []
        for header in macho.headers:
            for lc, _cmd, data in header.commands:
                if lc.cmd != LC_ID_DYLIB and lc.cmd not in _DEPENDENCY_COMMANDS:
                    continue
                # data is the NUL-padded name that follows the dylib_command struct
                raw: bytes = data.split(b"\x00", 1)[0]
                try:
                    name: str = raw.decode("utf-8")
                except UnicodeDecodeError as e:
                    raise InspectError(f"Undecodable load name {raw!r} in {path}") from e

                if lc.cmd == LC_ID_DYLIB:
                    if identity is None:
                        identity = name
                    continue
                if name in seen:
                    continue
                seen.add(name)
                dependencies.append(name)
        return identity, dependencies


class OtoolTool(InstallNameTool):
    """Reads load names from ``otool -D`` / ``otool -L`` output."""

    def __init__(self, *, otool: str = "otool", install_name_tool: str = "install_name_tool") -> None:
        super().__init__(install_name_tool=install_name_tool)
        self._otool: str = otool

    def install_name(self, path: pathlib.Path) -> str | None:
        """Return the install name of ``path``, if it has one.

        :raises InspectError: If ``otool`` fails.
        """

        return parse_otool_install_name(self._otool_output("-D", path))

    def references(self, path: pathlib.Path) -> list[str]:
        """List the dylibs ``path`` links against.

        ``otool -L`` prints a dylib's own install name first; it is dropped.

        :raises InspectError: If ``otool`` fails.
        """

        identity: str | None = self.install_name(path)
        names: list[str] = parse_otool_output(self._otool_output("-L", path))
        return [n for n in names if n != identity]

    def _otool_output(self, flag: str, path: pathlib.Path) -> str:
        cmd: list[str] = [self._otool, flag, str(path)]
        try:
            proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
        except OSError as e:
            raise InspectError(f"Cannot run {' '.join(cmd)}: {e}") from e
        if proc.returncode != 0:
            raise InspectError(
                f"otool failed (exit={proc.returncode}) on {path}: {proc.stderr.strip()}"
            )
        return proc.stdout


_OTOOL_LINE_RE: re.Pattern[str] = re.compile(
    r"^(?P<name>.+?) \((?:compatibility|current) version[^)]*\)$"
)


def parse_otool_output(text: str) -> list[str]:
    """Extract load names from ``otool -L`` output.

    Header lines (``<file>:`` or ``<file> (architecture arm64):``) are not
    indented and are ignored. Indented lines without the trailing version
    annotation are returned stripped as-is.

    :param text: ``otool -L`` stdout.
    :returns: Load names in order, each once.
    """

    seen: set[str] = set()
    names: list[str] = []
    for line in text.splitlines():
        if line[:1] not in ("\t", " "):
            continue
        stripped: str = line.strip()
        if stripped == "":
            continue
        m = _OTOOL_LINE_RE.match(stripped)
        name: str = m.group("name") if m is not None else stripped
        if name in seen:
            continue
        seen.add(name)
        names.append(name)
    return names


def parse_otool_install_name(text: str) -> str | None:
    """Extract the install name from ``otool -D`` output.

    The output is a ``<file>:`` (or ``<file> (architecture arm64):``) header
    followed by the install name, repeated per slice; executables print only
    the header.

    :param text: ``otool -D`` stdout.
    :returns: Install name of the first slice that has one, or ``None``.
    """

    for line in text.splitlines():
        stripped: str = line.strip()
        if stripped == "" or stripped.endswith(":") is True:
            continue
        return stripped
    return None


def make_tool(name: str) -> BinaryTool:
    """Build a binary tool by reader name.

    :param name: ``macholib`` or ``otool``.
    :returns: Tool instance.
    :raises ValueError: If the name is unknown.
    """

    if name == "macholib":
        return MachOTool()
    if name == "otool":
        return OtoolTool()
    raise ValueError(f"Unknown inspector {name!r}; expected 'macholib' or 'otool'.")


def _run_tool(cmd: list[str], *, cwd: pathlib.Path) -> None:
    """Run a metadata-mutation command.

    :param cmd: Command line.
    :param cwd: Working directory for this invocation only.
    :raises RewriteError: If the command cannot run or exits non-zero.
    """

    logger: logging.Logger = logging.getLogger("dylib_embedder")
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"dylib-embedder: running (cwd={cwd}): {' '.join(cmd)}")

    try:
        proc = subprocess.run(cmd, check=False, capture_output=True, text=True, cwd=cwd)
    except OSError as e:
        raise RewriteError(f"Cannot run {' '.join(cmd)}: {e}", command=cmd) from e
    if proc.returncode != 0:
        raise RewriteError(
            f"install_name_tool failed (exit={proc.returncode}): {' '.join(cmd)}: {proc.stderr.strip()}",
            command=cmd,
            returncode=proc.returncode,
            output=proc.stderr,
        )

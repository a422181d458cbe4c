"""Dependency embedder.

This module makes an application bundle self-contained:

- It walks the dylib references of the bundle's executable, copying every
  library that lives under the package-manager prefix into one flat library
  directory inside the bundle, recursively.
- It copies a caller-supplied list of extra libraries (and their closures)
  that the scan cannot see.
- It finishes with a fixup pass that relinks every reference whose leaf name
  is now present in the library directory.

Every reference it touches ends up as ``@executable_path/<lib relpath>/<leaf>``.
"""

from collections.abc import Iterator, Sequence
import contextlib
from dataclasses import dataclass
import logging
import os
import pathlib
import shutil
import stat
import time

from dylib_embedder.errors import CopyError, PreconditionError
from dylib_embedder.macho import BinaryTool, DependencyReference, MachOTool, parse_reference
from dylib_embedder.target import library_relpath

EXECUTABLE_ANCHOR: str = "@executable_path/"


@dataclass(frozen=True, slots=True)
class LibraryLayout:
    """Where embedded libraries live, relative to the executable.

    :ivar executable_path: The bundle's main executable.
    :ivar lib_relpath: Library directory relative to the executable's directory (POSIX).
    """

    executable_path: pathlib.Path
    lib_relpath: str

    @property
    def lib_dir(self) -> pathlib.Path:
        return self.executable_path.parent / self.lib_relpath

    def bundle_reference(self, leaf: str) -> str:
        """Return the executable-relative load name for an embedded library.

        :param leaf: Library file name.
        :returns: ``@executable_path/<lib_relpath>/<leaf>``.
        """

        return f"{EXECUTABLE_ANCHOR}{self.lib_relpath}/{leaf}"


@dataclass(frozen=True, slots=True)
class EmbedStats:
    """Summary of one embedding run.

    :ivar libraries_copied: Leaf names copied into the library directory, in copy order.
    :ivar references_rewritten: Number of load-name mutations performed.
    """

    libraries_copied: tuple[str, ...]
    references_rewritten: int


@contextlib.contextmanager
def writable(path: pathlib.Path) -> Iterator[None]:
    """Make ``path`` owner-writable for the duration of the block.

    The original permission bits are restored on exit, including when the
    block raises.

    :param path: File to unlock.
    """

    mode: int = stat.S_IMODE(os.stat(path).st_mode)
    if mode & stat.S_IWUSR:
        yield
        return

    os.chmod(path, mode | stat.S_IWUSR)
    try:
        yield
    finally:
        os.chmod(path, mode)


def embed(
    *,
    executable_path: pathlib.Path,
    source_prefix: str,
    platform_tag: str,
    extra_libraries: Sequence[pathlib.Path] = (),
    lib_root: str = "../lib",
    tool: BinaryTool | None = None,
    logger: logging.Logger | None = None,
) -> EmbedStats:
    """Embed the executable's package-manager libraries into its bundle.

    :param executable_path: The bundle's freshly built executable.
    :param source_prefix: Package-manager install root; only references under it are embedded.
    :param platform_tag: Platform tag naming the per-target library directory.
    :param extra_libraries: Libraries to embed even though no scanned binary references them.
    :param lib_root: Parent of the per-platform library directory, relative to the executable.
    :param tool: Binary metadata reader/writer (defaults to :class:`MachOTool`).
    :param logger: Optional logger for progress output.
    :returns: Run summary.
    :raises PreconditionError: If the executable does not exist.
    :raises CopyError: If a library cannot be copied into the bundle.
    :raises RewriteError: If a load name cannot be rewritten.
    :raises InspectError: If a binary cannot be read.
    """

    if logger is None:
        logger = logging.getLogger("dylib_embedder")
    if tool is None:
        tool = MachOTool()

    if executable_path.is_file() is False:
        raise PreconditionError(f"Executable does not exist: {executable_path}")

    layout: LibraryLayout = LibraryLayout(
        executable_path=executable_path,
        lib_relpath=library_relpath(platform_tag=platform_tag, lib_root=lib_root),
    )

    t0: float = time.perf_counter()
    logger.info(f"dylib-embedder: executable={executable_path}")
    logger.info(f"dylib-embedder: source_prefix={source_prefix}")
    logger.info(f"dylib-embedder: lib_dir={layout.lib_dir}")

    embedder: _Embedder = _Embedder(
        layout=layout,
        source_prefix=source_prefix,
        tool=tool,
        logger=logger,
    )
    stats: EmbedStats = embedder.run(extra_libraries=extra_libraries)

    t1: float = time.perf_counter()
    logger.info(
        f"dylib-embedder: embedded {len(stats.libraries_copied)} libraries, "
        f"rewrote {stats.references_rewritten} references in {t1 - t0:.2f}s"
    )
    return stats


class _Embedder:
    """State for one embedding run."""

    def __init__(
        self,
        *,
        layout: LibraryLayout,
        source_prefix: str,
        tool: BinaryTool,
        logger: logging.Logger,
    ) -> None:
        self._layout: LibraryLayout = layout
        self._prefix: str = source_prefix.rstrip("/") + "/"
        self._tool: BinaryTool = tool
        self._logger: logging.Logger = logger
        self._embedded: set[str] = set()
        self._copied: list[str] = []
        self._rewrites: int = 0

    def run(self, *, extra_libraries: Sequence[pathlib.Path]) -> EmbedStats:
        lib_dir: pathlib.Path = self._layout.lib_dir
        try:
            lib_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CopyError(f"Cannot create library directory {lib_dir}: {e}") from e
        self._embedded = self._list_embedded()
        if len(self._embedded) > 0:
            self._logger.info(f"dylib-embedder: {len(self._embedded)} libraries already embedded")

        self._embed_closure(self._layout.executable_path)

        for extra in extra_libraries:
            self._embed_extra(pathlib.Path(extra))

        self._fixup()

        return EmbedStats(
            libraries_copied=tuple(self._copied),
            references_rewritten=self._rewrites,
        )

    def _embed_closure(self, binary: pathlib.Path) -> None:
        """Relink ``binary``'s prefix references and embed their targets, depth-first.

        :param binary: Executable or already-embedded library.
        """

        identity: str | None = self._tool.install_name(binary)
        if identity is not None and identity.startswith(self._prefix) is True:
            self._relink_identity(binary, identity)

        for ref in self._references(binary):
            if ref.path.startswith(self._prefix) is False:
                continue

            self._relink(binary, ref)
            if ref.leaf in self._embedded:
                continue

            if self._logger.isEnabledFor(logging.DEBUG) is True:
                self._logger.debug(f"dylib-embedder: {binary.name} needs {ref.leaf} from {ref.directory}")
            copied: pathlib.Path = self._copy_in(pathlib.Path(ref.path), leaf=ref.leaf)
            self._embed_closure(copied)

    def _embed_extra(self, library: pathlib.Path) -> None:
        """Embed a forced library, its install name and its closure.

        The embedded copy is named after ``library`` itself, which may be a
        symlink whose name differs from the install name it records.

        :param library: Library outside the executable's scanned closure.
        """

        leaf: str = library.name
        embedded_path: pathlib.Path = self._layout.lib_dir / leaf
        if leaf not in self._embedded:
            embedded_path = self._copy_in(library, leaf=leaf)
        else:
            self._logger.debug(f"dylib-embedder: extra library {leaf} already embedded")

        identity: str | None = self._tool.install_name(embedded_path)
        if identity is not None:
            self._relink_identity(embedded_path, identity)

        self._embed_closure(embedded_path)

    def _fixup(self) -> None:
        """Relink every remaining absolute reference to an embedded library."""

        lib_dir: pathlib.Path = self._layout.lib_dir
        names: set[str] = self._list_embedded()
        binaries: list[pathlib.Path] = [self._layout.executable_path]
        binaries.extend(lib_dir / name for name in sorted(names))

        rewrites_before: int = self._rewrites
        for binary in binaries:
            if binary != self._layout.executable_path:
                identity: str | None = self._tool.install_name(binary)
                if identity is not None and identity.startswith(EXECUTABLE_ANCHOR) is False:
                    self._relink_identity(binary, identity)

            for ref in self._references(binary):
                if ref.path.startswith(EXECUTABLE_ANCHOR) is True:
                    continue
                if ref.leaf not in names:
                    continue
                self._relink(binary, ref)

        fixed: int = self._rewrites - rewrites_before
        if fixed > 0:
            self._logger.info(f"dylib-embedder: fixup pass rewrote {fixed} stale references")

    def _references(self, binary: pathlib.Path) -> list[DependencyReference]:
        refs: list[DependencyReference] = []
        for raw in self._tool.references(binary):
            ref: DependencyReference | None = parse_reference(raw)
            if ref is None:
                self._logger.debug(f"dylib-embedder: skipping unrecognized reference {raw!r} in {binary}")
                continue
            refs.append(ref)
        return refs

    def _relink(self, binary: pathlib.Path, ref: DependencyReference) -> None:
        """Point dependency ``ref`` in ``binary`` at its embedded copy."""

        new: str = self._layout.bundle_reference(ref.leaf)
        if ref.path == new:
            return

        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"dylib-embedder: {binary.name}: {ref.path} -> {new}")

        with writable(binary):
            self._tool.change_reference(binary, ref.path, new)
        self._rewrites += 1

    def _relink_identity(self, binary: pathlib.Path, identity: str) -> None:
        """Point ``binary``'s install name at its own bundle location."""

        new: str = self._layout.bundle_reference(binary.name)
        if identity == new:
            return

        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"dylib-embedder: {binary.name}: id {identity} -> {new}")

        with writable(binary):
            self._tool.set_install_name(binary, new)
        self._rewrites += 1

    def _copy_in(self, source: pathlib.Path, *, leaf: str) -> pathlib.Path:
        """Copy a library into the library directory under ``leaf``.

        Symlinks are followed, so the embedded file is the real library.

        :returns: Path of the embedded copy.
        :raises CopyError: If the copy fails.
        """

        dest: pathlib.Path = self._layout.lib_dir / leaf
        if source.is_file() is False:
            raise CopyError(f"Library does not exist: {source}")
        try:
            shutil.copy2(source, dest)
        except OSError as e:
            raise CopyError(f"Cannot copy {source} to {dest}: {e}") from e

        self._embedded.add(leaf)
        self._copied.append(leaf)
        self._logger.info(f"dylib-embedder: embedded {leaf} from {source.parent}")
        return dest

    def _list_embedded(self) -> set[str]:
        names: set[str] = set()
        for p in self._layout.lib_dir.iterdir():
            if p.is_file() is True:
                names.add(p.name)
        return names

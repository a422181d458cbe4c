"""Target resolution helpers.

This module turns user-facing knobs into the explicit values the embedder
needs:

- a macOS platform tag (e.g. ``macosx_14_2_arm64``) that names the bundle's
  library directory, accepted as a tag, a Rust-like Darwin target triple
  (e.g. ``aarch64-apple-darwin``) or ``native``;
- the package-manager source prefix whose libraries get embedded.

Nothing here reads the process environment; callers pass everything in.
"""

import platform
import posixpath
import re


class TargetResolutionError(ValueError):
    """Raised when a target spec or prefix cannot be resolved."""


_MACOS_TAG_RE: re.Pattern[str] = re.compile(
    r"^macosx_(?P<maj>\d+)_(?P<min>\d+)_(?P<arch>[a-z0-9_]+)$"
)

_HOMEBREW_PREFIXES: dict[str, str] = {
    "arm64": "/opt/homebrew",
    "aarch64": "/opt/homebrew",
}

_DEFAULT_PREFIX: str = "/usr/local"


def resolve_platform_tag(*, target: str, platform_tag_override: str | None) -> str:
    """Resolve user-supplied target arguments into a platform tag.

    :param target: A Darwin target triple or macOS platform tag. ``native`` uses the host.
    :param platform_tag_override: Optional explicit platform tag override.
    :returns: Normalized platform tag.
    :raises TargetResolutionError: If the target cannot be resolved.
    """

    if platform_tag_override is not None:
        return _validated_macos_tag(platform_tag_override)
    if target == "native":
        return _native_platform_tag()
    return _platform_tag_from_target_spec(target)


def resolve_source_prefix(*, source_prefix_override: str | None, machine: str | None = None) -> str:
    """Resolve the package-manager prefix whose libraries are embedded.

    :param source_prefix_override: Optional explicit prefix.
    :param machine: Host machine name; defaults to :func:`platform.machine`.
    :returns: Absolute prefix without a trailing slash.
    :raises TargetResolutionError: If the override is not absolute.
    """

    if source_prefix_override is not None:
        if source_prefix_override.startswith("/") is False:
            raise TargetResolutionError(
                f"Invalid --source-prefix {source_prefix_override!r}; expected an absolute path."
            )
        stripped: str = source_prefix_override.rstrip("/")
        if stripped == "":
            raise TargetResolutionError("Refusing to use '/' as the source prefix.")
        return stripped

    if machine is None:
        machine = platform.machine()
    return _HOMEBREW_PREFIXES.get(machine, _DEFAULT_PREFIX)


def library_relpath(*, platform_tag: str, lib_root: str = "../lib") -> str:
    """Compute the library directory relative to the executable's directory.

    :param platform_tag: Resolved platform tag.
    :param lib_root: Parent directory of the per-platform library directories.
    :returns: POSIX relative path (e.g. ``../lib/macosx_14_2_arm64``).
    :raises TargetResolutionError: If ``lib_root`` is absolute.
    """

    if lib_root.startswith("/") is True:
        raise TargetResolutionError(
            f"Invalid --lib-root {lib_root!r}; expected a path relative to the executable."
        )
    return posixpath.normpath(posixpath.join(lib_root, platform_tag))


def _native_platform_tag() -> str:
    """Build a platform tag for the running macOS host.

    :returns: Platform tag.
    :raises TargetResolutionError: If the host is not macOS.
    """

    release, _versioninfo, machine = platform.mac_ver()
    if release == "":
        raise TargetResolutionError(
            "'native' target requires a macOS host; pass --target or --platform-tag explicitly."
        )

    parts: list[str] = release.split(".")
    major: str = parts[0]
    minor: str = parts[1] if len(parts) >= 2 else "0"
    return _validated_macos_tag(f"macosx_{major}_{minor}_{machine}")


def _platform_tag_from_target_spec(target: str) -> str:
    """Convert a user-supplied target spec into a platform tag.

    :param target: Target triple or platform tag.
    :returns: Platform tag.
    :raises TargetResolutionError: If the target is not recognized.
    """

    normalized: str = _normalize_platform_tag(target)
    if normalized.startswith("macosx_") is True:
        return _validated_macos_tag(normalized)

    parts: list[str] = target.split("-")
    if len(parts) < 3:
        raise TargetResolutionError(
            f"Unrecognized target spec {target!r}. Provide a Darwin triple or macOS platform tag."
        )

    arch: str = parts[0]
    os_part: str = parts[2]
    if os_part.startswith("darwin") is True:
        return _darwin_platform_tag(arch=arch)

    raise TargetResolutionError(
        f"Unsupported OS in target triple {target!r} (os={os_part!r}); only Darwin is supported."
    )


def _darwin_platform_tag(*, arch: str) -> str:
    """Map a Rust-like Darwin triple into a platform tag.

    :param arch: Rust arch component.
    :returns: Platform tag.
    :raises TargetResolutionError: If the arch is not supported.
    """

    if arch == "x86_64":
        return "macosx_10_9_x86_64"
    if arch == "aarch64" or arch == "arm64":
        return "macosx_11_0_arm64"
    raise TargetResolutionError(f"Unsupported Darwin arch in target triple: {arch!r}")


def _validated_macos_tag(platform_tag: str) -> str:
    """Normalize and validate a macOS platform tag.

    :param platform_tag: Candidate tag in pip or sysconfig spelling.
    :returns: Normalized tag.
    :raises TargetResolutionError: If it is not a macOS tag.
    """

    normalized: str = _normalize_platform_tag(platform_tag)
    if _MACOS_TAG_RE.match(normalized) is None:
        raise TargetResolutionError(
            f"Invalid platform tag {platform_tag!r}; expected e.g. 'macosx_14_0_arm64'."
        )
    return normalized


def _normalize_platform_tag(platform_tag: str) -> str:
    """Normalize common platform-tag spellings into the underscore form.

    :param platform_tag: Platform string (pip-style or sysconfig-style).
    :returns: Normalized platform tag.
    """

    # sysconfig uses e.g. "macosx-26.0-arm64" while tags use "macosx_26_0_arm64".
    v: str = platform_tag.replace("-", "_").replace(".", "_")
    return v

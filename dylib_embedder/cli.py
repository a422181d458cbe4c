"""Command line interface for dylib-embedder."""

import argparse
import logging
import pathlib
import sys

from dylib_embedder.embedder import embed
from dylib_embedder.errors import EmbedError
from dylib_embedder.macho import make_tool
from dylib_embedder.target import TargetResolutionError, resolve_platform_tag, resolve_source_prefix


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the dylib-embedder logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("dylib_embedder")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def main(argv: list[str] | None = None) -> int:
    """Run the dylib-embedder CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="dylib-embedder",
        description=(
            "Copy an executable's package-manager dylibs into its app bundle and relink them."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_embed = subparsers.add_parser(
        "embed",
        help="Embed dylib dependencies next to a built executable.",
    )
    p_embed.add_argument(
        "executable",
        type=pathlib.Path,
        help="Path to the executable inside the app bundle (e.g. My.app/Contents/MacOS/my).",
    )
    p_embed.add_argument(
        "--source-prefix",
        type=str,
        default=None,
        help=(
            "Package-manager install root whose libraries get embedded. "
            "Defaults to the Homebrew prefix for the host arch."
        ),
    )
    p_embed.add_argument(
        "--target",
        type=str,
        default="native",
        help=(
            "Darwin target triple (e.g. aarch64-apple-darwin) or macOS platform tag "
            "(e.g. macosx_14_0_arm64). Use 'native' for the current host."
        ),
    )
    p_embed.add_argument(
        "--platform-tag",
        type=str,
        default=None,
        help="Override the platform tag naming the library directory directly.",
    )
    p_embed.add_argument(
        "--lib-root",
        type=str,
        default="../lib",
        help="Parent of the per-platform library directory, relative to the executable.",
    )
    p_embed.add_argument(
        "--extra-library",
        dest="extra_libraries",
        type=pathlib.Path,
        action="append",
        default=[],
        help="Library to embed even if no scanned binary links it. Repeatable.",
    )
    p_embed.add_argument(
        "--inspector",
        choices=("macholib", "otool"),
        default="macholib",
        help="How load commands are read.",
    )
    p_embed.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p_embed.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )

    ns = parser.parse_args(argv)
    if ns.command == "embed":
        logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)
        try:
            platform_tag: str = resolve_platform_tag(
                target=ns.target,
                platform_tag_override=ns.platform_tag,
            )
            source_prefix: str = resolve_source_prefix(source_prefix_override=ns.source_prefix)
            embed(
                executable_path=ns.executable,
                source_prefix=source_prefix,
                platform_tag=platform_tag,
                extra_libraries=ns.extra_libraries,
                lib_root=ns.lib_root,
                tool=make_tool(ns.inspector),
                logger=logger,
            )
        except (EmbedError, TargetResolutionError) as e:
            logger.error(f"dylib-embedder: error: {e}")
            return 1
        return 0

    raise AssertionError(f"Unhandled command: {ns.command}")

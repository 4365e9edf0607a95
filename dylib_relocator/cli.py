"""Command line interface for dylib-relocator."""

import argparse
import logging
import pathlib
import sys

from dylib_relocator.descriptor import DependencyReference, DescriptorReader, OtoolDescriptorReader
from dylib_relocator.engine import RelocationEngine
from dylib_relocator.errors import RelocationError
from dylib_relocator.rewriter import InstallNameToolRewriter, LinkRewriter
from dylib_relocator.target import EmbedTarget, TargetResolutionError, resolve_embed_target


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the dylib-relocator logger.

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

    logger: logging.Logger = logging.getLogger("dylib_relocator")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _make_backend(name: str, logger: logging.Logger) -> tuple[DescriptorReader, LinkRewriter]:
    """Build the descriptor reader and link rewriter for a backend.

    :param name: Backend name (``otool`` or ``lief``).
    :param logger: Logger handed to the backend.
    :returns: Reader and rewriter pair.
    """

    if name == "lief":
        # Imported lazily: the otool backend does not need LIEF.
        from dylib_relocator.lief_backend import LiefDescriptorReader, LiefLinkRewriter

        return LiefDescriptorReader(), LiefLinkRewriter(logger=logger)

    reader: OtoolDescriptorReader = OtoolDescriptorReader(logger=logger)
    return reader, InstallNameToolRewriter(reader=reader, logger=logger)


def _add_common_arguments(p: argparse.ArgumentParser) -> None:
    """Add the arguments shared by ``embed`` and ``verify``.

    :param p: Subcommand parser.
    """

    p.add_argument(
        "executable",
        type=pathlib.Path,
        help="Path to the executable inside the app bundle (e.g. Foo.app/Contents/MacOS/foo).",
    )
    p.add_argument(
        "-p",
        "--prefix",
        type=str,
        required=True,
        help="Directory prefix of source-built libraries to embed (e.g. /opt/build/lib).",
    )
    p.add_argument(
        "--embedding-dir",
        type=pathlib.Path,
        default=None,
        help="Embedding directory. Defaults to lib-<arch>-<os-version> next to the executable.",
    )
    p.add_argument(
        "--arch",
        type=str,
        default=None,
        help="Target architecture (e.g. arm64, x86_64). Defaults to the host.",
    )
    p.add_argument(
        "--os-version",
        type=str,
        default=None,
        help="Target OS version as 'MAJOR.MINOR'. Defaults to the host.",
    )
    p.add_argument(
        "--backend",
        choices=("otool", "lief"),
        default="otool",
        help="Binary metadata backend: otool/install_name_tool or the LIEF library.",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )


def main(argv: list[str] | None = None) -> int:
    """Run the dylib-relocator CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="dylib-relocator",
        description=(
            "Embed an app bundle's source-built dynamic libraries into the bundle "
            "and rewrite its link metadata to bundle-relative paths."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_embed = subparsers.add_parser(
        "embed",
        help="Copy and relocate the executable's library closure.",
    )
    _add_common_arguments(p_embed)
    p_embed.add_argument(
        "--extra-lib",
        type=pathlib.Path,
        action="append",
        default=[],
        help="Library to embed even if nothing links it. Repeatable; order is kept.",
    )

    p_verify = subparsers.add_parser(
        "verify",
        help="Report references that still point at build-machine paths.",
    )
    _add_common_arguments(p_verify)

    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    try:
        embedding_dir: pathlib.Path | None = ns.embedding_dir
        target: EmbedTarget | None = None
        if embedding_dir is None:
            target = resolve_embed_target(arch_override=ns.arch, os_version_override=ns.os_version)

        reader, rewriter = _make_backend(ns.backend, logger)
        engine: RelocationEngine = RelocationEngine(reader, rewriter, logger=logger)

        if ns.command == "embed":
            engine.embed(
                ns.executable,
                ns.prefix,
                embedding_dir,
                ns.extra_lib,
                target=target,
            )
            return 0

        if ns.command == "verify":
            if embedding_dir is None:
                embedding_dir = engine.default_embedding_dir(ns.executable, target)
            bad: list[DependencyReference] = engine.verify(ns.executable, ns.prefix, embedding_dir)
            if len(bad) > 0:
                logger.error(f"dylib-relocator: {len(bad)} unrelocated references")
                return 1
            logger.info("dylib-relocator: bundle is relocated")
            return 0
    except (RelocationError, TargetResolutionError) as e:
        logger.error(f"dylib-relocator: error: {e}")
        return 1

    raise AssertionError(f"Unhandled command: {ns.command}")

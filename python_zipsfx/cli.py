"""Command line interface for python-zipsfx."""

import argparse
import logging
import sys

from python_zipsfx import __version__
from python_zipsfx.builder import build_bundle
from python_zipsfx.errors import BuildError
from python_zipsfx.options import BuildOptions, OptionsError, resolve_build_options


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the python-zipsfx logger.

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

    logger: logging.Logger = logging.getLogger("python_zipsfx")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="python-zipsfx",
        description="Bundle a multi-file Python program into one self-extracting executable.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser(
        "build",
        help="Build a self-extracting .pyz bundle.",
    )
    p_build.add_argument(
        "inputs",
        nargs="+",
        metavar="{directory | files ...}",
        help="A directory to bundle whole, or a list of files/directories (the first file is main).",
    )
    p_build.add_argument(
        "-C",
        "--compress",
        type=int,
        nargs="?",
        const=9,
        default=0,
        metavar="LEVEL",
        help="Deflate compression level 0-9 (bare -C means 9).",
    )
    p_build.add_argument(
        "-o",
        "--output",
        type=str,
        default=None,
        help="Output file. Defaults to the main script or directory name with a .pyz suffix.",
    )
    p_build.add_argument(
        "-m",
        "--main",
        type=str,
        default=None,
        help="Name of the main module to run.",
    )
    p_build.add_argument(
        "-T",
        "--text-archive",
        action="store_true",
        help="Use the text-based archive format instead of ZIP.",
    )
    p_build.add_argument(
        "-B",
        "--base64",
        action="store_true",
        help="Encode the archive with base64.",
    )
    p_build.add_argument(
        "-D",
        "--provide-data-handle",
        action="store_true",
        help="Provide a DATA stream with the text after the main module's __END__ line.",
    )
    p_build.add_argument(
        "-I",
        "--includedir",
        action="append",
        default=[],
        metavar="DIR",
        help="Library directory to search inputs in and trim from names. Repeatable.",
    )
    p_build.add_argument(
        "--search-includedir",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Search missing inputs within -I directories.",
    )
    p_build.add_argument(
        "--trim-includedir",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Shorten names of files within -I directories.",
    )
    p_build.add_argument(
        "--sizelimit",
        type=int,
        default=None,
        help="Maximum file size to process, both when packing and when unpacking.",
    )
    p_build.add_argument(
        "--random-seed",
        type=int,
        default=None,
        help="Seed for the text archive delimiters.",
    )
    p_build.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p_build.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the python-zipsfx CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = _build_parser()
    try:
        ns = parser.parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 2

    if ns.command == "build":
        logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)
        try:
            options: BuildOptions = resolve_build_options(
                compression=ns.compress,
                text_archive=ns.text_archive,
                base64=ns.base64,
                simulate_data=ns.provide_data_handle,
                include_dirs=ns.includedir,
                search_include_dirs=ns.search_includedir,
                trim_include_dirs=ns.trim_includedir,
                sizelimit=ns.sizelimit,
                main=ns.main,
                output=ns.output,
                random_seed=ns.random_seed,
            )
            build_bundle(inputs=ns.inputs, options=options, logger=logger)
        except (BuildError, OptionsError) as e:
            logger.error(f"Error: {e}")
            return 1
        return 0

    raise AssertionError(f"Unhandled command: {ns.command}")


if __name__ == "__main__":
    sys.exit(main())

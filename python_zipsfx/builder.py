"""Bundle builder.

This module implements the generator side:

- It collects the input ``.py`` files (a directory tree or an explicit list),
  derives their logical names and picks the main module.
- It renders the launcher prefix for the requested features.
- It encodes the sources as a ZIP (offsets absolute over the whole artifact) or
  as a text archive, optionally base64-wrapped, and writes prefix + archive as
  one executable file.
"""

from collections.abc import Sequence
from dataclasses import dataclass
import ast
import logging
import os
import pathlib
import random
import re
import time

from python_zipsfx.errors import InputError
from python_zipsfx.names import NameCanonicalizer
from python_zipsfx.options import BuildOptions
from python_zipsfx.quoting import get_quoter
from python_zipsfx.store import Entry, EntryStore
from python_zipsfx.template import END_MARKER, derive_features, render_launcher
from python_zipsfx.textarchive import encode_text_archive
from python_zipsfx.zipformat import encode_zip


MAIN_CANDIDATES: tuple[str, ...] = ("__main__.py", "main.py")
OUTPUT_SUFFIX: str = ".pyz"
ARTIFACT_MODE: int = 0o755

_CODING_RE: re.Pattern[str] = re.compile(r"^[ \t\f]*#.*?coding[:=][ \t]*[-\w.]+")
_DATA_MARKER: bytes = b"__END__"

# How the main module was determined.
_MAIN_FROM_DIRECTORY: int = 1
_MAIN_FROM_FIRST_FILE: int = 2
_MAIN_EXPLICIT: int = 3


@dataclass(frozen=True, slots=True)
class InputPlan:
    """Collected inputs.

    :ivar files: ``(logical_name, stored_path)`` pairs in archive order.
    :ivar main: Logical name of the main module.
    :ivar output_hint: Name the default output is derived from.
    :ivar main_kind: How ``main`` was determined.
    """

    files: tuple[tuple[str, str], ...]
    main: str
    output_hint: str | None
    main_kind: int


class _Collector:
    """Accumulates inputs with logical-name collision checks."""

    canonicalizer: NameCanonicalizer
    main_kind: int
    files: list[tuple[str, str]]
    by_name: dict[str, str]
    first: str | None

    def __init__(self, canonicalizer: NameCanonicalizer, main_kind: int) -> None:
        self.canonicalizer = canonicalizer
        self.main_kind = main_kind
        self.files = []
        self.by_name = {}
        self.first = None

    def add_file(self, fname: str, fixed_prefix: str | None) -> None:
        stored: str
        logical: str
        stored, logical = self.canonicalizer.canonicalize(fname, fixed_prefix)

        if os.path.exists(stored) is False:
            raise InputError(f"cannot find {stored}")
        if os.path.isfile(stored) is False:
            raise InputError(f"{stored} is not a plain file")

        previous: str | None = self.by_name.get(logical)
        if previous is not None:
            if previous != stored:
                raise InputError(f"duplicated files: {stored} and {previous} will be same name in the archive")
            return

        if self.first is None:
            self.first = logical
        self.by_name[logical] = stored
        self.files.append((logical, stored))

    def add_dir(self, dirname: str, fixed_prefix: str | None) -> None:
        for dirpath, dirnames, filenames in os.walk(dirname):
            dirnames[:] = sorted(d for d in dirnames if d.startswith(".") is False)
            for fname in sorted(filenames):
                if fname.startswith(".") is True or fname.endswith(".py") is False:
                    continue
                self.add_file(os.path.join(dirpath, fname), fixed_prefix)


def collect_inputs(inputs: Sequence[str], options: BuildOptions) -> InputPlan:
    """Collect input files and decide the main module.

    Three cases:

    - a single directory without ``--main``: every ``.py`` below it, names
      relative to it, main is ``__main__.py`` or ``main.py``;
    - a list of files/directories: the first collected file is main;
    - an explicit ``--main``: it must be among the collected files.

    :param inputs: Input paths as given on the command line.
    :param options: Build options.
    :returns: Collected inputs.
    :raises InputError: If an input is missing or the main module cannot be determined.
    """

    if len(inputs) == 0:
        raise InputError("no input files")

    include_dirs: list[str] = list(options.include_dirs)
    search: bool = options.search_include_dirs
    trim: bool = options.trim_include_dirs
    output_hint: str | None = None
    main: str | None = None
    main_kind: int

    if options.main is not None:
        main = options.main
        output_hint = main
        main_kind = _MAIN_EXPLICIT

    if len(inputs) == 1 and os.path.isdir(inputs[0]) is True:
        d: str = inputs[0].rstrip("/") or "/"
        output_hint = d
        include_dirs.append(d)
        search = False
        trim = True
        if options.main is None:
            main_kind = _MAIN_FROM_DIRECTORY
    elif options.main is None:
        main_kind = _MAIN_FROM_FIRST_FILE

    canonicalizer: NameCanonicalizer = NameCanonicalizer(include_dirs, trim=trim)
    if main is not None:
        main = canonicalizer.canonicalize(main)[1]

    collector: _Collector = _Collector(canonicalizer, main_kind)
    for f in inputs:
        found_prefix: str | None = None
        if os.path.exists(f) is False and search is True:
            for libdir in canonicalizer.include_dirs:
                candidate: str = f"{libdir}/{f}"
                if os.path.exists(candidate) is True:
                    found_prefix = libdir
                    f = candidate
                    break

        if os.path.isfile(f) is True:
            collector.add_file(f, found_prefix)
        elif os.path.isdir(f) is True:
            collector.add_dir(f.rstrip("/") or "/", found_prefix)
        elif os.path.exists(f) is False:
            raise InputError(f"file not found: {f}")
        else:
            raise InputError(f"file unknown type: {f}")

    if main_kind == _MAIN_FROM_DIRECTORY:
        for candidate_main in MAIN_CANDIDATES:
            if candidate_main in collector.by_name:
                main = candidate_main
                break
    elif main_kind == _MAIN_FROM_FIRST_FILE:
        main = collector.first
        output_hint = collector.first

    if main is None:
        raise InputError("no main files guessed")

    return InputPlan(
        files=tuple(collector.files),
        main=main,
        output_hint=output_hint,
        main_kind=main_kind,
    )


def guess_output_path(output_hint: str | None) -> pathlib.Path:
    """Derive the default output name: ``foo.py`` -> ``foo.pyz``, ``app`` -> ``app.pyz``.

    :param output_hint: Main module or input directory.
    :returns: Output path in the working directory.
    :raises InputError: If no sensible name can be derived.
    """

    if output_hint is None or output_hint in (".", "/"):
        raise InputError("cannot guess name")
    base: str = os.path.basename(output_hint.rstrip("/"))
    if len(base) == 0 or base in (".", ".."):
        raise InputError("cannot guess name")
    if base.endswith(".py") is True:
        base = base[:-3]
    return pathlib.Path(base + OUTPUT_SUFFIX)


def leading_comments(content: bytes) -> str:
    """Extract the leading comment block of a module for the launcher.

    The shebang, coding declarations and the launcher end marker are dropped;
    a block that is not valid UTF-8 is dropped entirely.

    :param content: Module source.
    :returns: Comment lines (each ending with a newline), possibly empty.
    """

    block: list[bytes] = []
    for raw in content.splitlines(keepends=True):
        if raw.startswith(b"#") is False:
            break
        block.append(raw)

    try:
        text: str = b"".join(block).decode("utf-8")
    except UnicodeDecodeError:
        return ""

    kept: list[str] = []
    for i, line in enumerate(text.splitlines()):
        if i == 0 and line.startswith("#!") is True:
            continue
        if _CODING_RE.match(line) is not None or line == END_MARKER:
            continue
        kept.append(line + "\n")
    return "".join(kept)


def locate_trailing_data(content: bytes) -> tuple[int, int] | None:
    """Find the ``__END__`` line that ends the code of a module.

    Only a line consisting solely of ``__END__`` after a syntactically
    complete prefix counts, so the marker inside a string literal is ignored.

    :param content: Module source.
    :returns: ``(code_end, data_start)`` byte offsets, or ``None``.
    """

    pos: int = 0
    for line in content.splitlines(keepends=True):
        start: int = pos
        pos += len(line)
        if line.rstrip(b"\r\n") != _DATA_MARKER:
            continue
        try:
            ast.parse(content[0:start])
        except (SyntaxError, ValueError):
            continue
        return (start, pos)
    return None


def create_sfx(
    store: EntryStore,
    main: str,
    options: BuildOptions,
    *,
    logger: logging.Logger | None = None,
) -> tuple[bytes, bytes]:
    """Render the launcher and encode the archive for a populated store.

    :param store: Entries to bundle.
    :param main: Logical name of the main module.
    :param options: Build options.
    :param logger: Optional logger.
    :returns: ``(prefix, archive)``; the artifact is their concatenation.
    :raises InputError: If ``main`` is not in ``store``.
    """

    if logger is None:
        logger = logging.getLogger("python_zipsfx")

    main_entry: Entry | None = store.find(main)
    if main_entry is None:
        raise InputError(f"no main file {main!r} will be contained in archive")

    simulate_data: tuple[int, int] | None = None
    if options.simulate_data is True:
        simulate_data = locate_trailing_data(main_entry.content)
        if simulate_data is None:
            logger.warning(f"python-zipsfx: {main} has no __END__ line; DATA will not be provided")

    config: dict[str, object] = {
        "main": main,
        "dequote": options.quote,
        "simulate_data": simulate_data,
        "sizelimit": options.sizelimit,
    }
    features: frozenset[str] = derive_features(
        text_archive=options.text_archive,
        quote=options.quote,
        compression=options.compression,
        simulate_data=simulate_data is not None,
    )
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"python-zipsfx: features={sorted(features)} config={config!r}")

    prefix: bytes = render_launcher(features, config, leading_comments=leading_comments(main_entry.content))

    archive: bytes
    if options.text_archive is True:
        archive = encode_text_archive(store, rng=random.Random(options.random_seed))
    else:
        offset: int = 0 if options.quote is not None else len(prefix)
        archive = encode_zip(store, compression=options.compression, offset=offset, logger=logger)

    if options.quote is not None:
        archive = get_quoter(options.quote).quote(archive)
    return (prefix, archive)


def build_bundle(
    *,
    inputs: Sequence[str],
    options: BuildOptions,
    logger: logging.Logger | None = None,
) -> pathlib.Path:
    """Build a self-extracting bundle.

    :param inputs: A directory, or a list of files and directories.
    :param options: Build options (including the optional output path).
    :param logger: Optional logger for progress output.
    :returns: Path of the written artifact.
    :raises BuildError: If bundling fails; the output file may then be incomplete.
    """

    if logger is None:
        logger = logging.getLogger("python_zipsfx")

    t_total0: float = time.perf_counter()
    plan: InputPlan = collect_inputs(inputs, options)

    output_path: pathlib.Path
    if options.output is not None:
        output_path = options.output
    else:
        output_path = guess_output_path(plan.output_hint)
        logger.info(f"python-zipsfx: output is set to: {output_path}")

    if plan.main_kind != _MAIN_EXPLICIT or options.main != plan.main:
        logger.info(f"python-zipsfx: using {plan.main} as main script")

    names: set[str] = {logical for logical, _ in plan.files}
    if plan.main not in names:
        raise InputError(f"no main file {plan.main!r} will be contained in archive")

    store: EntryStore = EntryStore(sizelimit=options.sizelimit)
    for logical, stored in plan.files:
        logger.info(f"python-zipsfx: {logical} <- {stored}")
        store.add_entry(logical, stored)

    t_render0: float = time.perf_counter()
    prefix: bytes
    archive: bytes
    prefix, archive = create_sfx(store, plan.main, options, logger=logger)
    t_render1: float = time.perf_counter()
    logger.info(
        f"python-zipsfx: archive built ({len(store)} files, {len(archive)} bytes, "
        f"launcher {len(prefix)} bytes) in {t_render1 - t_render0:.2f}s"
    )

    logger.info(f"python-zipsfx: writing to {output_path}")
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "wb") as f:
        f.write(prefix)
        f.write(archive)
    os.chmod(output_path, ARTIFACT_MODE)

    t_total1: float = time.perf_counter()
    logger.info(f"python-zipsfx: done in {t_total1 - t_total0:.2f}s")
    return output_path

"""Build option resolution.

Raw values (from the command line or a library caller) are validated and
normalized once into an immutable :class:`BuildOptions`.
"""

from collections.abc import Sequence
from dataclasses import dataclass
import pathlib

from python_zipsfx.quoting import QUOTERS
from python_zipsfx.store import DEFAULT_SIZELIMIT


class OptionsError(ValueError):
    """Raised when build options are invalid."""


@dataclass(frozen=True, slots=True)
class BuildOptions:
    """Resolved build options.

    :ivar compression: Compression level 0-9 (ZIP container only).
    :ivar text_archive: Use the text container instead of ZIP.
    :ivar quote: Transport quoting scheme (``base64``) or ``None``.
    :ivar simulate_data: Expose the main module's ``__END__`` data as ``DATA``.
    :ivar include_dirs: Library search prefixes, without trailing slashes.
    :ivar search_include_dirs: Look up missing inputs under ``include_dirs``.
    :ivar trim_include_dirs: Strip include prefixes from logical names.
    :ivar sizelimit: Size ceiling for every member, at build and at run time.
    :ivar main: Explicit main module, if any.
    :ivar output: Explicit output path, if any.
    :ivar random_seed: Seed for text-archive delimiters, if any.
    """

    compression: int = 0
    text_archive: bool = False
    quote: str | None = None
    simulate_data: bool = False
    include_dirs: tuple[str, ...] = ()
    search_include_dirs: bool = True
    trim_include_dirs: bool = True
    sizelimit: int = DEFAULT_SIZELIMIT
    main: str | None = None
    output: pathlib.Path | None = None
    random_seed: int | None = None


def resolve_build_options(
    *,
    compression: int = 0,
    text_archive: bool = False,
    base64: bool = False,
    simulate_data: bool = False,
    include_dirs: Sequence[str] = (),
    search_include_dirs: bool = True,
    trim_include_dirs: bool = True,
    sizelimit: int | None = None,
    main: str | None = None,
    output: str | pathlib.Path | None = None,
    random_seed: int | None = None,
) -> BuildOptions:
    """Resolve raw option values into :class:`BuildOptions`.

    :param compression: Compression level (0-9).
    :param text_archive: Use the text container.
    :param base64: Wrap the archive in base64.
    :param simulate_data: Provide the ``DATA`` handle.
    :param include_dirs: Library search prefixes.
    :param search_include_dirs: Search missing inputs in ``include_dirs``.
    :param trim_include_dirs: Trim include prefixes from logical names.
    :param sizelimit: Size ceiling in bytes; ``None`` uses the default.
    :param main: Explicit main module.
    :param output: Explicit output path.
    :param random_seed: Seed for delimiter generation.
    :returns: Resolved options.
    :raises OptionsError: If a value is out of range.
    """

    if compression < 0 or compression > 9:
        raise OptionsError(f"bad --compress={compression}; expected 0-9.")

    limit: int = DEFAULT_SIZELIMIT if sizelimit is None else sizelimit
    if limit <= 0:
        raise OptionsError(f"bad --sizelimit={limit}; expected a positive number of bytes.")

    dirs: list[str] = []
    for d in include_dirs:
        stripped: str = d.rstrip("/")
        if len(stripped) == 0:
            raise OptionsError(f"bad --includedir={d!r}")
        dirs.append(stripped)

    quote: str | None = None
    if base64 is True:
        quote = "base64"
        if quote not in QUOTERS:
            raise OptionsError(f"quoting scheme {quote!r} is not available")

    if main is not None and len(main) == 0:
        raise OptionsError("--main must not be empty")

    return BuildOptions(
        compression=compression,
        text_archive=text_archive,
        quote=quote,
        simulate_data=simulate_data,
        include_dirs=tuple(dirs),
        search_include_dirs=search_include_dirs,
        trim_include_dirs=trim_include_dirs,
        sizelimit=limit,
        main=main,
        output=pathlib.Path(output) if output is not None else None,
        random_seed=random_seed,
    )

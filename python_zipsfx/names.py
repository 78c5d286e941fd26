"""Archive name canonicalization.

Logical names become lookup keys of the module registry inside the bundle, so
any name that could resolve outside the bundle root is rejected here.
"""

from collections.abc import Sequence

from python_zipsfx.errors import InputError


def normalize_path(fname: str) -> str:
    """Normalize a POSIX-style path without touching the filesystem.

    Repeated separators collapse, ``.`` segments are dropped and ``X/..`` pairs
    are removed from left to right. A ``..`` following the root or another
    ``..`` is kept as-is.

    :param fname: Raw path.
    :returns: Normalized path.
    """

    parts: list[str] = [p for i, p in enumerate(fname.split("/")) if p != "" or i == 0]
    pos: int = 0
    while pos < len(parts):
        if parts[pos] == ".":
            del parts[pos]
            continue
        if pos >= 1 and parts[pos] == ".." and parts[pos - 1] not in ("", ".."):
            del parts[pos - 1 : pos + 1]
            pos = max(pos - 1, 0)
            continue
        pos += 1

    if parts == [""]:
        return "/"
    return "/".join(parts)


def normalize_dir(dirname: str) -> str:
    """Normalize a directory prefix; ``.`` stands for the working directory."""

    normalized: str = normalize_path(dirname)
    if normalized == "/":
        return normalized
    return normalized.rstrip("/") or "."


def _strip_dir(name: str, dirname: str) -> str | None:
    if dirname == ".":
        return None
    prefix: str = "/" if dirname == "/" else dirname + "/"
    if name.startswith(prefix) is True:
        return name[len(prefix) :]
    return None


class NameCanonicalizer:
    """Derive ``(stored_name, logical_name)`` pairs for bundle inputs.

    :ivar include_dirs: Library search prefixes, tried in order when trimming.
    :ivar trim: Whether a known prefix is stripped from logical names.
    """

    include_dirs: list[str]
    trim: bool

    def __init__(self, include_dirs: Sequence[str] = (), *, trim: bool = False) -> None:
        self.include_dirs = [normalize_dir(d) for d in include_dirs]
        self.trim = trim

    def canonicalize(self, fname: str, fixed_prefix: str | None = None) -> tuple[str, str]:
        """Canonicalize a filesystem path into stored and logical names.

        :param fname: Path relative to the working directory.
        :param fixed_prefix: Prefix to strip instead of searching ``include_dirs``.
        :returns: ``(stored_name, logical_name)``.
        :raises InputError: If the logical name is empty, absolute or escapes upwards.
        """

        stored: str = normalize_path(fname)

        logical: str = stored
        if self.trim is True:
            if fixed_prefix is not None:
                trimmed: str | None = _strip_dir(logical, normalize_dir(fixed_prefix))
                if trimmed is not None:
                    logical = trimmed
            else:
                for libdir in self.include_dirs:
                    trimmed = _strip_dir(logical, libdir)
                    if trimmed is not None:
                        logical = trimmed
                        break

        if len(logical) == 0:
            raise InputError(f"{fname}: name is empty")
        if logical.startswith("/") is True:
            raise InputError(f"{stored}: name is absolute")
        if ".." in logical.split("/"):
            raise InputError(f"{stored}: name contains ..")
        return (stored, logical)

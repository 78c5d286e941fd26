"""Ordered, name-unique collection of bundle entries."""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
import io
import os
import time
from typing import BinaryIO, Union

from python_zipsfx.errors import CapacityError, InputError


DEFAULT_SIZELIMIT: int = 64 * 1024 * 1024

EntrySource = Union[None, str, os.PathLike, BinaryIO, bytes, bytearray, memoryview]


@dataclass(frozen=True, slots=True)
class Entry:
    """A single source file as stored in the bundle.

    :ivar name: Logical name (registry key at runtime).
    :ivar content: Raw file bytes.
    :ivar mtime: Modification time as a POSIX timestamp.
    :ivar source: Filesystem path the content was read from, if any.
    """

    name: str
    content: bytes
    mtime: float
    source: str | None = None
    _compressed: dict = field(default_factory=dict, init=False, repr=False, compare=False, hash=False)


class EntryStore:
    """Entries in insertion order; insertion order is archive member order."""

    sizelimit: int
    _entries: list[Entry]
    _by_name: dict[str, Entry]

    def __init__(self, entries: Iterable[object] = (), *, sizelimit: int = DEFAULT_SIZELIMIT) -> None:
        self.sizelimit = sizelimit
        self._entries = []
        self._by_name = {}
        self.add_entries(entries)

    def add_entry(self, name: str, source: EntrySource = None, mtime: float | None = None) -> Entry:
        """Add one entry.

        ``source`` is one of: omitted (read the file ``name``), a path, a readable
        binary stream, or literal ``bytes`` content.

        :param name: Logical name in the archive.
        :param source: Content source.
        :param mtime: Modification time, used when the source has none.
        :returns: The stored entry (an existing one when deduplicated).
        :raises InputError: On a name collision with a different source, or an unreadable path.
        :raises CapacityError: If the content exceeds ``sizelimit``.
        """

        if len(name) == 0:
            raise InputError("empty entry name")

        if isinstance(source, (bytes, bytearray, memoryview)):
            self._check_duplicate(name, None)
            content: bytes = bytes(source)
            if len(content) > self.sizelimit:
                raise CapacityError(f"{name}: size over ({self.sizelimit})")
            return self._append(Entry(name=name, content=content, mtime=_now(mtime), source=None))

        if source is None or isinstance(source, (str, os.PathLike)):
            path: str = os.fspath(name if source is None else source)
            existing: Entry | None = self._check_duplicate(name, path)
            if existing is not None:
                return existing
            if os.path.exists(path) is False:
                raise InputError(f"cannot find {path}")
            if os.path.isfile(path) is False:
                raise InputError(f"{path} is not a plain file")
            with open(path, "rb") as f:
                content, file_mtime = self._read_bounded(f, path)
            return self._append(Entry(name=name, content=content, mtime=_now(file_mtime or mtime), source=path))

        if hasattr(source, "read") is True:
            self._check_duplicate(name, None)
            label: str = str(getattr(source, "name", name))
            content, stream_mtime = self._read_bounded(source, label)
            return self._append(Entry(name=name, content=content, mtime=_now(stream_mtime or mtime), source=None))

        raise TypeError(f"Unsupported entry source for {name!r}: {type(source).__name__}")

    def add_entries(self, items: Iterable[object]) -> None:
        """Bulk-add entries.

        Each item is a path (stored under its own name), an
        ``(name, source[, mtime])`` tuple, or an :class:`Entry`.

        :param items: Heterogeneous list of entry specs.
        """

        for item in items:
            if isinstance(item, Entry):
                self._check_duplicate(item.name, None)
                self._append(item)
            elif isinstance(item, (str, os.PathLike)):
                self.add_entry(os.fspath(item))
            elif isinstance(item, (tuple, list)):
                self.add_entry(*item)
            else:
                raise TypeError(f"Unsupported entry spec: {item!r}")

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[Entry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def find(self, name: str) -> Entry | None:
        return self._by_name.get(name)

    def names(self) -> list[str]:
        return [e.name for e in self._entries]

    def _check_duplicate(self, name: str, path: str | None) -> Entry | None:
        old: Entry | None = self._by_name.get(name)
        if old is None:
            return None
        if path is not None and old.source == path:
            return old
        raise InputError(
            f"duplicated files: {path!r} and {old.source!r} will have the same name {name!r} in the archive"
        )

    def _append(self, entry: Entry) -> Entry:
        self._entries.append(entry)
        self._by_name[entry.name] = entry
        return entry

    def _read_bounded(self, handle: BinaryIO, label: str) -> tuple[bytes, float | None]:
        """Read at most ``sizelimit`` bytes, failing if more are available.

        :param handle: Binary stream.
        :param label: Name used in error messages.
        :returns: ``(content, mtime)``; mtime is ``None`` if the stream has no stat.
        :raises CapacityError: If the stream holds more than ``sizelimit`` bytes.
        """

        content: bytes | None = handle.read(self.sizelimit)
        if content is None:
            content = b""
        excess: bytes | None = handle.read(1)
        if excess is not None and len(excess) > 0:
            raise CapacityError(f"{label}: size over ({self.sizelimit})")

        mtime: float | None
        try:
            mtime = os.fstat(handle.fileno()).st_mtime
        except (AttributeError, OSError, io.UnsupportedOperation):
            mtime = None
        return (bytes(content), mtime)


def _now(mtime: float | None) -> float:
    if mtime is None:
        return time.time()
    return float(mtime)

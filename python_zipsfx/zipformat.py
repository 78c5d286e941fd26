"""ZIP-compatible container encoder.

Only what a bundle needs: stored/deflated regular files, sizes known up front,
no ZIP64, single disk. Offsets in the central directory are absolute over the
final artifact, so a launcher prepended to the archive keeps the whole file a
valid ZIP for generic readers.
"""

from collections.abc import Iterable
import io
import logging
import struct
import time

from python_zipsfx.compression import CompressedEntry, compress
from python_zipsfx.errors import CapacityError
from python_zipsfx.store import Entry, EntryStore


LOCAL_FILE_SIGNATURE: int = 0x04034B50
CENTRAL_DIRECTORY_SIGNATURE: int = 0x02014B50
END_OF_CENTRAL_DIRECTORY_SIGNATURE: int = 0x06054B50

VERSION_MADE_BY: int = 0x031E  # 3.0, Unix
EXTERNAL_ATTR_REGULAR_FILE: int = 0o100644 << 16  # -rw-r--r--
FLAG_UTF8_NAME: int = 0x800

_LOCAL_HEADER: struct.Struct = struct.Struct("<IHHHHHIIIHH")
_CENTRAL_HEADER: struct.Struct = struct.Struct("<IHHHHHHIIIHHHHHII")
_END_RECORD: struct.Struct = struct.Struct("<IHHHHIIH")

_MAX_U16: int = 0xFFFF
_MAX_U32: int = 0xFFFFFFFF


def dos_datetime(mtime: float) -> tuple[int, int]:
    """Convert a POSIX timestamp into MS-DOS ``(time, date)`` fields.

    Local time is used, as ZIP readers interpret these fields as local time.

    :param mtime: POSIX timestamp.
    :returns: ``(dos_time, dos_date)``; ``(0, 0)`` for years before 1980,
        2107-12-31 23:59:58 for years after 2107.
    """

    t: time.struct_time = time.localtime(mtime)
    if t.tm_year < 1980:
        return (0, 0)
    if t.tm_year > 2107:
        return ((23 << 11) | (59 << 5) | 29, (127 << 9) | (12 << 5) | 31)
    dos_time: int = (t.tm_hour << 11) | (t.tm_min << 5) | (t.tm_sec >> 1)
    dos_date: int = ((t.tm_year - 1980) << 9) | (t.tm_mon << 5) | t.tm_mday
    return (dos_time & _MAX_U16, dos_date & _MAX_U16)


def _encode_name(name: str) -> tuple[bytes, int]:
    """Encode a member name.

    :param name: Logical name.
    :returns: ``(name_bytes, extra_flag_bits)``.
    """

    try:
        return (name.encode("ascii"), 0)
    except UnicodeEncodeError:
        return (name.encode("utf-8"), FLAG_UTF8_NAME)


def encode_zip(
    entries: EntryStore | Iterable[Entry],
    *,
    compression: int = 9,
    offset: int = 0,
    header: bytes = b"",
    trailer_comment: bytes = b"",
    logger: logging.Logger | None = None,
) -> bytes:
    """Serialize entries into a ZIP archive.

    Either pass the data to be prepended as ``header`` (written inline), or pass
    only its length as ``offset`` and prepend it yourself afterwards.

    :param entries: Entries in archive order.
    :param compression: Compression level 0-9.
    :param offset: Number of bytes that will precede the returned archive.
    :param header: Bytes written verbatim before the first local record.
    :param trailer_comment: Archive comment.
    :param logger: Optional logger for per-entry debug output.
    :returns: Archive bytes.
    :raises CapacityError: If sizes or counts exceed classic ZIP limits.
    """

    if logger is None:
        logger = logging.getLogger("python_zipsfx")

    sizelimit: int | None = entries.sizelimit if isinstance(entries, EntryStore) else None
    out: io.BytesIO = io.BytesIO()
    central: io.BytesIO = io.BytesIO()
    count: int = 0

    out.write(header)
    for entry in entries:
        pos: int = out.tell() + offset
        ce: CompressedEntry = compress(entry, compression, sizelimit=sizelimit)
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"python-zipsfx: compressing {entry.name}: {ce.size} -> {ce.compressed_size}")

        if ce.size > _MAX_U32 or ce.compressed_size > _MAX_U32 or pos > _MAX_U32:
            raise CapacityError(f"{entry.name}: too large for a classic zip archive")

        name: bytes
        name_flags: int
        name, name_flags = _encode_name(entry.name)
        if len(name) > _MAX_U16:
            raise CapacityError(f"{entry.name}: name too long")

        flags: int = ce.flag_bits | name_flags
        dos_time: int
        dos_date: int
        dos_time, dos_date = dos_datetime(entry.mtime)

        out.write(
            _LOCAL_HEADER.pack(
                LOCAL_FILE_SIGNATURE,
                ce.version_needed,
                flags,
                ce.method,
                dos_time,
                dos_date,
                ce.crc32,
                ce.compressed_size,
                ce.size,
                len(name),
                0,  # extra field length
            )
        )
        out.write(name)
        out.write(ce.data)

        central.write(
            _CENTRAL_HEADER.pack(
                CENTRAL_DIRECTORY_SIGNATURE,
                VERSION_MADE_BY,
                ce.version_needed,
                flags,
                ce.method,
                dos_time,
                dos_date,
                ce.crc32,
                ce.compressed_size,
                ce.size,
                len(name),
                0,  # extra field length
                0,  # file comment length
                0,  # disk number start
                0,  # internal attributes
                EXTERNAL_ATTR_REGULAR_FILE,
                pos,
            )
        )
        central.write(name)
        count += 1

    if count > _MAX_U16:
        raise CapacityError(f"too many entries for a classic zip archive ({count})")
    if len(trailer_comment) > _MAX_U16:
        raise CapacityError("archive comment too long")

    central_bytes: bytes = central.getvalue()
    central_start: int = out.tell() + offset
    if central_start > _MAX_U32:
        raise CapacityError("archive too large for a classic zip archive")

    out.write(central_bytes)
    out.write(
        _END_RECORD.pack(
            END_OF_CENTRAL_DIRECTORY_SIGNATURE,
            0,  # this disk
            0,  # disk with central directory
            count,
            count,
            len(central_bytes),
            central_start,
            len(trailer_comment),
        )
    )
    out.write(trailer_comment)
    return out.getvalue()

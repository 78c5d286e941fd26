"""Per-entry compression for the ZIP container."""

from dataclasses import dataclass
import zlib

from python_zipsfx.errors import BuildError, CapacityError
from python_zipsfx.store import Entry


METHOD_STORED: int = 0
METHOD_DEFLATED: int = 8

VERSION_STORED: int = 10
VERSION_DEFLATED: int = 20

# General purpose flag bits 1-2: deflate quality, informational only.
FLAG_DEFLATE_NORMAL: int = 0x0
FLAG_DEFLATE_MAXIMUM: int = 0x2
FLAG_DEFLATE_FAST: int = 0x4


@dataclass(frozen=True, slots=True)
class CompressedEntry:
    """An entry together with its archive representation.

    :ivar entry: Source entry.
    :ivar method: ``METHOD_STORED`` or ``METHOD_DEFLATED``.
    :ivar data: Member payload (equal to ``entry.content`` when stored).
    :ivar crc32: CRC-32 of the uncompressed content.
    :ivar version_needed: "Version needed to extract" field.
    :ivar flag_bits: General purpose flag bits.
    """

    entry: Entry
    method: int
    data: bytes
    crc32: int
    version_needed: int
    flag_bits: int

    @property
    def compressed_size(self) -> int:
        return len(self.data)

    @property
    def size(self) -> int:
        return len(self.entry.content)


def validate_level(level: int) -> None:
    """Validate a compression level.

    :param level: Compression level (0-9).
    :raises BuildError: If the level is out of range.
    """

    if level < 0 or level > 9:
        raise BuildError(f"Invalid compression level={level}; expected 0-9.")


def deflate_flag_bits(level: int) -> int:
    """Map a deflate level to the ZIP quality flag bits.

    :param level: Compression level (1-9).
    :returns: Flag bits for the general purpose field.
    """

    if level > 7:
        return FLAG_DEFLATE_MAXIMUM
    if level > 2:
        return FLAG_DEFLATE_NORMAL
    return FLAG_DEFLATE_FAST


def compress(entry: Entry, level: int, *, sizelimit: int | None = None) -> CompressedEntry:
    """Compress an entry, memoized per ``(entry, level)``.

    Deflate output that does not shrink the content is discarded in favour of
    a stored member.

    :param entry: Entry to compress.
    :param level: Compression level; ``0`` always stores.
    :param sizelimit: Optional size ceiling for content and payload.
    :returns: Compressed entry.
    :raises CapacityError: If the content or payload exceeds ``sizelimit``.
    """

    validate_level(level)
    content: bytes = entry.content
    if sizelimit is not None and len(content) > sizelimit:
        raise CapacityError(f"{entry.name}: too large data")

    cached: CompressedEntry | None = entry._compressed.get(level)
    if cached is not None:
        return cached

    crc: int = zlib.crc32(content) & 0xFFFFFFFF
    method: int = METHOD_STORED
    version: int = VERSION_STORED
    flags: int = 0
    data: bytes = content

    if level >= 1:
        # Raw deflate stream: negative wbits, no zlib header, no dictionary.
        co = zlib.compressobj(level, zlib.DEFLATED, -15)
        deflated: bytes = co.compress(content) + co.flush()
        if len(deflated) < len(content):
            method = METHOD_DEFLATED
            version = VERSION_DEFLATED
            flags = deflate_flag_bits(level)
            data = deflated

    if sizelimit is not None and len(data) > sizelimit:
        raise CapacityError(f"{entry.name}: too large data after compression")

    result: CompressedEntry = CompressedEntry(
        entry=entry,
        method=method,
        data=data,
        crc32=crc,
        version_needed=version,
        flag_bits=flags,
    )
    entry._compressed[level] = result
    return result

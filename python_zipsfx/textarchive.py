"""Delimiter-framed text container.

Each record is::

    TXD
    <delimiter>
    <name>
    <delimiter>
    <content>
    <delimiter>

and the archive ends with a ``TXE`` line. The delimiter is chosen per entry so
that it occurs in neither the name nor the content.
"""

from collections.abc import Iterable
import io
import random

from python_zipsfx.store import Entry


ENTRY_TAG: bytes = b"TXD\n"
END_TAG: bytes = b"TXE\n"


def choose_delimiter(name: bytes, content: bytes, rng: random.Random) -> bytes:
    """Pick a delimiter that collides with neither ``name`` nor ``content``.

    :param name: Encoded entry name.
    :param content: Entry content.
    :param rng: Random source.
    :returns: Delimiter bytes (without newline).
    """

    while True:
        sep: bytes = b"----TEXTARCHIVE-%08d----------------" % rng.randrange(100000000)
        if sep not in content and sep not in name:
            return sep


def encode_text_archive(entries: Iterable[Entry], *, rng: random.Random | None = None) -> bytes:
    """Serialize entries into the text container.

    :param entries: Entries in archive order.
    :param rng: Optional random source (seed it for reproducible output).
    :returns: Archive bytes.
    """

    if rng is None:
        rng = random.Random()

    out: io.BytesIO = io.BytesIO()
    for entry in entries:
        name: bytes = entry.name.encode("utf-8")
        sep: bytes = choose_delimiter(name, entry.content, rng)
        out.write(ENTRY_TAG)
        out.write(sep + b"\n")
        out.write(name)
        out.write(b"\n" + sep + b"\n")
        out.write(entry.content)
        out.write(b"\n" + sep + b"\n")
    out.write(END_TAG)
    return out.getvalue()

"""Text-safe transport wrappers for the embedded archive."""

import base64


class Base64Quoter:
    """Reversible ASCII re-encoding using MIME-style base64 lines."""

    name: str = "base64"

    def quote(self, data: bytes) -> bytes:
        return base64.encodebytes(data)

    def unquote(self, data: bytes) -> bytes:
        return base64.decodebytes(data)


QUOTERS: dict[str, Base64Quoter] = {
    Base64Quoter.name: Base64Quoter(),
}


def get_quoter(name: str) -> Base64Quoter:
    """Look up a quoting scheme by name.

    :param name: Scheme name (e.g. ``base64``).
    :returns: Quoter instance.
    :raises KeyError: If the scheme is unknown.
    """

    quoter: Base64Quoter | None = QUOTERS.get(name)
    if quoter is None:
        raise KeyError(f"Unknown quoting scheme: {name!r}")
    return quoter

"""Launcher template rendering.

The launcher written in front of the archive is assembled from the loader
runtime source (:mod:`python_zipsfx.runtime`):

1. Regions delimited by ``#BEGIN <TAG>`` / ``#END <TAG>`` lines are parsed into
   a tree; a region is kept (without its marker lines) iff ``<TAG>`` is an
   active feature, otherwise it is dropped with everything nested inside.
2. ``@@NAME@@`` placeholders are substituted. Replacement text is inserted
   verbatim and never rescanned.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
import importlib.resources
import re

from python_zipsfx.errors import BuildError


FEATURE_MAIN: str = "MAIN"
FEATURE_ZIPARCHIVE: str = "ZIPARCHIVE"
FEATURE_TEXTARCHIVE: str = "TEXTARCHIVE"
FEATURE_QUOTE: str = "QUOTE"
FEATURE_COMPRESSION: str = "COMPRESSION"
FEATURE_SIMULATEDATA: str = "SIMULATEDATA"

RUNTIME_STATE_MODULE: str = "__zipsfx__"
END_MARKER: str = "#__ZIPSFX_END__"

_REGION_RE: re.Pattern[str] = re.compile(r"^#(?P<kind>BEGIN|END) (?P<tag>[A-Z][A-Z0-9_]*)[ \t]*$")
_PLACEHOLDER_RE: re.Pattern[str] = re.compile(r"@@(?P<name>[A-Z][A-Z0-9_]*)@@")

# Line 2 is a string statement for Python and an exec for /bin/sh. The one-line
# bootstrap compiles everything up to the end marker under the artifact's name.
_LAUNCHER_HEAD: str = r"""#!/bin/sh
''''exec "${ZIPSFX_PYTHON:-python3}" -c "import sys;p=sys.argv[1];d=open(p,'rb').read();m=b'\n#__ZIPSFX_END__\n';i=d.index(m)+len(m);sys.argv[:2]=[p];exec(compile(d[:i],p,'exec'),{'__name__':'__zipsfx_launcher__','__file__':p,'__data_offset__':i})" "$0" "$@" #'''
@@LEADING_COMMENTS@@# This script is packaged by python-zipsfx
"""

_LAUNCHER_TAIL: str = """
#BEGIN MAIN
if __name__ == "__zipsfx_launcher__":
    bootstrap(__file__, __data_offset__, @@CONFIG@@, "@@PKGNAME@@")
#END MAIN
"""


class TemplateError(BuildError):
    """Raised when a template has unbalanced regions or unknown placeholders."""


@dataclass(slots=True)
class Region:
    """A ``#BEGIN``/``#END`` region.

    :ivar tag: Feature tag (empty for the document root).
    :ivar line: 1-based line number of the ``#BEGIN`` marker.
    :ivar body: Child nodes: raw lines and nested regions.
    """

    tag: str
    line: int
    body: list = field(default_factory=list)


def parse_template(text: str) -> list:
    """Parse a template into a tree of lines and :class:`Region` nodes.

    :param text: Template text.
    :returns: Top-level nodes.
    :raises TemplateError: On unbalanced or crossing region markers.
    """

    root: Region = Region(tag="", line=0)
    stack: list[Region] = [root]
    for lineno, line in enumerate(text.splitlines(keepends=True), start=1):
        m = _REGION_RE.match(line.rstrip("\r\n"))
        if m is None:
            stack[-1].body.append(line)
            continue

        tag: str = m.group("tag")
        if m.group("kind") == "BEGIN":
            region: Region = Region(tag=tag, line=lineno)
            stack[-1].body.append(region)
            stack.append(region)
            continue

        if len(stack) == 1:
            raise TemplateError(f"line {lineno}: #END {tag} without #BEGIN")
        if stack[-1].tag != tag:
            raise TemplateError(
                f"line {lineno}: #END {tag} does not close #BEGIN {stack[-1].tag} (line {stack[-1].line})"
            )
        stack.pop()

    if len(stack) > 1:
        raise TemplateError(f"line {stack[-1].line}: #BEGIN {stack[-1].tag} is never closed")
    return root.body


def _emit(nodes: list, features: frozenset[str], out: list[str]) -> None:
    for node in nodes:
        if isinstance(node, Region):
            if node.tag in features:
                _emit(node.body, features, out)
        else:
            out.append(node)


def render_template(text: str, features: Iterable[str], replacements: Mapping[str, str]) -> str:
    """Render a template for a feature set.

    :param text: Template text.
    :param features: Active feature tags.
    :param replacements: Placeholder name to replacement text.
    :returns: Rendered text.
    :raises TemplateError: On malformed regions or an unknown placeholder.
    """

    out: list[str] = []
    _emit(parse_template(text), frozenset(features), out)

    def _substitute(m: re.Match[str]) -> str:
        name: str = m.group("name")
        if name not in replacements:
            raise TemplateError(f"unknown placeholder @@{name}@@")
        return replacements[name]

    return _PLACEHOLDER_RE.sub(_substitute, "".join(out))


def derive_features(*, text_archive: bool, quote: str | None, compression: int, simulate_data: bool) -> frozenset[str]:
    """Derive the launcher feature set from build options.

    :param text_archive: Text container instead of ZIP.
    :param quote: Quoting scheme name, or ``None``.
    :param compression: Compression level.
    :param simulate_data: Whether ``DATA`` emulation is requested.
    :returns: Feature tags.
    """

    features: set[str] = {FEATURE_MAIN}
    features.add(FEATURE_TEXTARCHIVE if text_archive is True else FEATURE_ZIPARCHIVE)
    if quote is not None:
        features.add(FEATURE_QUOTE)
    if compression > 0:
        features.add(FEATURE_COMPRESSION)
    if simulate_data is True:
        features.add(FEATURE_SIMULATEDATA)
    return frozenset(features)


def runtime_source() -> str:
    """Return the source of the loader runtime shipped with this package."""

    return importlib.resources.files("python_zipsfx").joinpath("runtime.py").read_text(encoding="utf-8")


def launcher_template() -> str:
    return _LAUNCHER_HEAD + runtime_source() + _LAUNCHER_TAIL


def render_launcher(
    features: Iterable[str],
    config: Mapping[str, object],
    *,
    leading_comments: str = "",
    pkgname: str = RUNTIME_STATE_MODULE,
) -> bytes:
    """Render the launcher prefix of an artifact.

    :param features: Active feature tags.
    :param config: Runtime configuration (must be a Python literal).
    :param leading_comments: Comment lines copied from the main module.
    :param pkgname: ``sys.modules`` key of the runtime state.
    :returns: Launcher bytes, ending with the end marker line.
    :raises TemplateError: If the rendered launcher is unusable.
    """

    rendered: str = render_template(
        launcher_template(),
        features,
        {
            "LEADING_COMMENTS": leading_comments,
            "CONFIG": repr(dict(config)),
            "PKGNAME": pkgname,
        },
    )
    if f"\n{END_MARKER}\n" in rendered:
        raise TemplateError(f"launcher text contains the end marker line {END_MARKER!r}")
    if rendered.endswith("\n") is False:
        rendered += "\n"
    return (rendered + END_MARKER + "\n").encode("utf-8")

import pytest

from python_zipsfx.errors import InputError
from python_zipsfx.names import NameCanonicalizer, normalize_path


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("a/./b", "a/b"),
        ("a/b/../c", "a/c"),
        ("a//b///c", "a/b/c"),
        ("./a/b", "a/b"),
        ("a/b/c/../../d", "a/d"),
        ("/a/../b", "/b"),
        ("/../x", "/../x"),
        ("../../x", "../../x"),
        ("a/../../x", "../x"),
        ("/", "/"),
    ],
)
def test_normalize_path(raw: str, expected: str) -> None:
    assert normalize_path(raw) == expected


def test_canonicalize_without_trimming_keeps_stored_name() -> None:
    c: NameCanonicalizer = NameCanonicalizer(["lib"], trim=False)
    assert c.canonicalize("lib/./foo.py") == ("lib/foo.py", "lib/foo.py")


def test_canonicalize_trims_first_matching_include_dir() -> None:
    c: NameCanonicalizer = NameCanonicalizer(["vendor/", "lib", "lib/sub"], trim=True)
    assert c.canonicalize("lib/foo.py") == ("lib/foo.py", "foo.py")
    assert c.canonicalize("lib/sub/bar.py") == ("lib/sub/bar.py", "sub/bar.py")
    assert c.canonicalize("other/baz.py") == ("other/baz.py", "other/baz.py")


def test_canonicalize_fixed_prefix_wins_over_include_dirs() -> None:
    c: NameCanonicalizer = NameCanonicalizer(["lib"], trim=True)
    assert c.canonicalize("lib/pkg/mod.py", "lib/pkg") == ("lib/pkg/mod.py", "mod.py")


def test_canonicalize_normalizes_prefixes() -> None:
    c: NameCanonicalizer = NameCanonicalizer(["./lib/", "src//", "."], trim=True)
    assert c.include_dirs == ["lib", "src", "."]
    assert c.canonicalize("./lib/foo.py") == ("lib/foo.py", "foo.py")
    assert c.canonicalize("src/./bar.py") == ("src/bar.py", "bar.py")
    assert c.canonicalize("./top.py") == ("top.py", "top.py")
    assert c.canonicalize("./lib/pkg/mod.py", "./lib/pkg/") == ("lib/pkg/mod.py", "mod.py")


def test_canonicalize_rejects_parent_escape() -> None:
    c: NameCanonicalizer = NameCanonicalizer(trim=True)
    with pytest.raises(InputError, match=r"name contains \.\."):
        c.canonicalize("../x.py")


def test_canonicalize_rejects_absolute_name() -> None:
    c: NameCanonicalizer = NameCanonicalizer()
    with pytest.raises(InputError, match="name is absolute"):
        c.canonicalize("/etc/passwd")


def test_canonicalize_accepts_dotdot_consumed_by_trimming() -> None:
    c: NameCanonicalizer = NameCanonicalizer(["../shared"], trim=True)
    assert c.canonicalize("../shared/util.py") == ("../shared/util.py", "util.py")


def test_canonicalize_rejects_empty_name() -> None:
    c: NameCanonicalizer = NameCanonicalizer()
    with pytest.raises(InputError, match="name is empty"):
        c.canonicalize("a/..")

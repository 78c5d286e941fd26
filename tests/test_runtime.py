import base64
import importlib
import linecache
import pathlib
import struct
import sys
import threading
import traceback
import types
from collections.abc import Iterator

import pytest

from python_zipsfx import runtime
from python_zipsfx.builder import locate_trailing_data
from python_zipsfx.runtime import (
    FormatError,
    LoadCycleError,
    ModuleRegistry,
    RegistryResolver,
    DefaultResolver,
    ResolverChain,
    bootstrap,
    module_name_for,
    parse_archive,
    sniff_encoding,
)
from python_zipsfx.store import EntryStore
from python_zipsfx.textarchive import encode_text_archive
from python_zipsfx.zipformat import encode_zip


LIMIT: int = 1 << 20


def _store(members: dict[str, bytes]) -> EntryStore:
    store: EntryStore = EntryStore()
    for name, content in members.items():
        store.add_entry(name, content, mtime=1_600_000_000)
    return store


def _local(
    data: bytes = b"x",
    *,
    name: bytes = b"m.py",
    flags: int = 0,
    method: int = 0,
    crc: int | None = None,
    csize: int | None = None,
    size: int | None = None,
) -> bytes:
    header: bytes = struct.pack(
        "<HHHHHIIIHH",
        10,
        flags,
        method,
        0,
        0,
        runtime.zlib.crc32(data) if crc is None else crc,
        len(data) if csize is None else csize,
        len(data) if size is None else size,
        len(name),
        0,
    )
    return b"PK\x03\x04" + header + name + data


def _raw_deflate(data: bytes) -> bytes:
    co = runtime.zlib.compressobj(9, runtime.zlib.DEFLATED, -15)
    return co.compress(data) + co.flush()


@pytest.fixture
def sandbox(monkeypatch: pytest.MonkeyPatch) -> Iterator[types.ModuleType]:
    """Isolate import state; exposes a ``zsfx_tracker`` module bundled code can report to."""

    tracker: types.ModuleType = types.ModuleType("zsfx_tracker")
    tracker.calls = []
    before: set[str] = set(sys.modules)
    monkeypatch.setattr(sys, "meta_path", list(sys.meta_path))
    monkeypatch.setattr(sys, "path", list(sys.path))
    monkeypatch.setattr(sys, "argv", ["app.pyz"])
    monkeypatch.setitem(sys.modules, "__main__", sys.modules["__main__"])
    monkeypatch.setitem(sys.modules, "zsfx_tracker", tracker)
    yield tracker
    for name in set(sys.modules) - before:
        if name.startswith(("zsfx_", "__zipsfx__")) is True:
            del sys.modules[name]


def _chain(members: dict[str, bytes], root: str = "/srv/app.pyz") -> tuple[ModuleRegistry, ResolverChain]:
    registry: ModuleRegistry = ModuleRegistry(root)
    for name, code in members.items():
        registry.add(name, code)
    chain: ResolverChain = ResolverChain([RegistryResolver(registry), DefaultResolver()])
    chain.install()
    return (registry, chain)


# -- archive parsing


def test_parse_zip_archive_round_trip() -> None:
    members: dict[str, bytes] = {"main.py": b"print(1)\n", "lib/a.py": b"A = 'a' * 80\n" * 40}
    for level in (0, 9):
        data: bytes = encode_zip(_store(members), compression=level)
        assert parse_archive(data, LIMIT) == list(members.items())


def test_parse_text_archive_round_trip() -> None:
    members: dict[str, bytes] = {"main.py": b"print(1)\n", "lib/a.py": b"\n\nx = 2\n\n"}
    data: bytes = encode_text_archive(_store(members))
    assert parse_archive(data, LIMIT) == list(members.items())


def test_parse_empty_text_archive() -> None:
    assert parse_archive(b"TXE\n", LIMIT) == []


@pytest.mark.parametrize(
    ("data", "message"),
    [
        (b"", "archive truncated"),
        (b"JUNK", "malformed data"),
        (b"PK\x05\x06" + b"\x00" * 18, "malformed or empty archive"),
        (_local(flags=0x8), "m.py: unsupported: deferred length"),
        (_local(size=0xFFFFFFFF), "m.py: unsupported: 64bit length"),
        (_local(csize=0xFFFFFFFF), "m.py: unsupported: 64bit length"),
        (_local(size=2), "m.py: malformed data: bad length"),
        (_local(method=12), r"m.py: unsupported compression \(type 12\)"),
        (_local(name=b"\xff.py", flags=0x800), "malformed data: bad name"),
        (_local(b"abcdef")[:-2], "archive truncated"),
        (_local(_raw_deflate(b"hello"), method=8, size=5, crc=0), "m.py: inflate failed: crc mismatch"),
        (_local(_raw_deflate(b"hello"), method=8, size=4), "m.py: malformed data: bad length"),
        (_local(b"\xff\xff\xff", method=8, size=3), "m.py: malformed data"),
        (b"TXD\nSEP\nname\nSEP\ncontent", "truncated data"),
        (b"TXD\nSEP\n\xff\xfe.py\nSEP\nx\nSEP\nTXE\n", "malformed data: bad name"),
    ],
)
def test_parse_archive_errors(data: bytes, message: str) -> None:
    with pytest.raises(FormatError, match=message):
        parse_archive(data + b"PK\x01\x02" if data.startswith(b"PK\x03\x04") else data, LIMIT)


def test_parse_archive_size_limits() -> None:
    with pytest.raises(FormatError, match=r"m.py: too big data \(u:4\)"):
        parse_archive(_local(b"abcd") + b"PK\x01\x02", 3)
    with pytest.raises(FormatError, match=r"m.py: too big data \(c:4\)"):
        parse_archive(_local(b"abcd", size=0) + b"PK\x01\x02", 3)


def test_dequote() -> None:
    assert runtime.dequote(base64.encodebytes(b"PK\x05\x06"), "base64") == b"PK\x05\x06"
    with pytest.raises(FormatError, match="unsupported quoting scheme"):
        runtime.dequote(b"", "rot13")


def test_sniff_encoding() -> None:
    assert sniff_encoding(b"x = 1\n") == "utf-8"
    assert sniff_encoding(b"#!/usr/bin/env python\n# -*- coding: latin-1 -*-\n") == "iso-8859-1"
    assert sniff_encoding(b"\xef\xbb\xbfx = 1\n") == "utf-8-sig"
    assert sniff_encoding(b"# coding: no-such-codec\n") == "utf-8"


def test_module_name_for() -> None:
    assert module_name_for("a.py") == "a"
    assert module_name_for("pkg/sub/mod.py") == "pkg.sub.mod"
    assert module_name_for("pkg/__init__.py") == "pkg"
    assert module_name_for("json") == "json"


# -- registry and resolution


def test_registry_lookup_strips_fake_root() -> None:
    registry: ModuleRegistry = ModuleRegistry("/srv/app.pyz")
    registry.add("lib/a.py", b"")
    assert registry.lookup("/srv/app.pyz/lib/a.py") is registry.lookup("lib/a.py")
    assert registry.lookup("/elsewhere/lib/a.py") is None
    assert registry.relative("/srv/app.pyz") == ""
    assert registry.has_directory("lib") is True
    assert registry.has_directory("li") is False


def test_import_module_package_and_namespace(sandbox: types.ModuleType) -> None:
    _chain(
        {
            "zsfx_mod.py": b"VALUE = 1\n",
            "zsfx_pkg/__init__.py": b"from . import inner\nVALUE = inner.VALUE + 1\n",
            "zsfx_pkg/inner.py": b"VALUE = 10\n",
            "zsfx_ns/deep/leaf.py": b"VALUE = 'leaf'\n",
        }
    )

    mod = importlib.import_module("zsfx_mod")
    assert mod.VALUE == 1
    assert mod.__file__ == "/srv/app.pyz/zsfx_mod.py"

    pkg = importlib.import_module("zsfx_pkg")
    assert pkg.VALUE == 11
    assert pkg.__path__ == ["/srv/app.pyz/zsfx_pkg"]

    leaf = importlib.import_module("zsfx_ns.deep.leaf")
    assert leaf.VALUE == "leaf"


def test_unbundled_modules_fall_through(sandbox: types.ModuleType) -> None:
    _, chain = _chain({"zsfx_mod.py": b""})
    assert chain.find_spec("zsfx_not_bundled_anywhere") is None
    assert chain.find_spec("json") is not None
    assert chain.require("sys") is False
    with pytest.raises(ModuleNotFoundError):
        chain.require("zsfx_not_bundled_anywhere.py")


def test_require_loads_once(sandbox: types.ModuleType) -> None:
    _, chain = _chain({"zsfx_once.py": b"import zsfx_tracker\nzsfx_tracker.calls.append(__name__)\n"})

    assert chain.require("zsfx_once.py") is True
    assert chain.require("zsfx_once") is False
    assert chain.require("/srv/app.pyz/zsfx_once.py") is False
    mod = importlib.import_module("zsfx_once")
    assert sandbox.calls == ["zsfx_once"]
    assert sys.modules["zsfx_once"] is mod


def test_import_then_require_is_noop(sandbox: types.ModuleType) -> None:
    _, chain = _chain({"zsfx_imp.py": b"import zsfx_tracker\nzsfx_tracker.calls.append(1)\n"})
    importlib.import_module("zsfx_imp")
    assert chain.require("zsfx_imp.py") is False
    assert sandbox.calls == [1]


def test_recursive_load_is_reported(sandbox: types.ModuleType) -> None:
    registry, chain = _chain({"zsfx_cycle.py": b"import zsfx_tracker\nzsfx_tracker.chain.require('zsfx_cycle.py')\n"})
    sandbox.chain = chain

    with pytest.raises(LoadCycleError, match="zsfx_cycle.py: recursive loading"):
        chain.require("zsfx_cycle.py")
    assert registry.lookup("zsfx_cycle.py").loaded is False
    assert "zsfx_cycle" not in sys.modules


def test_failed_load_can_be_retried(sandbox: types.ModuleType) -> None:
    registry, chain = _chain(
        {"zsfx_flaky.py": b"import zsfx_tracker\nzsfx_tracker.calls.append(1)\nif len(zsfx_tracker.calls) == 1:\n    raise RuntimeError('first')\n"}
    )
    with pytest.raises(RuntimeError, match="first"):
        chain.require("zsfx_flaky.py")
    assert chain.require("zsfx_flaky.py") is True
    assert registry.lookup("zsfx_flaky.py").loaded is True
    assert sandbox.calls == [1, 1]


def test_concurrent_loads_execute_once(sandbox: types.ModuleType) -> None:
    _, chain = _chain(
        {"zsfx_slow.py": b"import time\nimport zsfx_tracker\nzsfx_tracker.calls.append(1)\ntime.sleep(0.2)\n"}
    )
    results: list[bool] = []
    lock: threading.Lock = threading.Lock()

    def worker() -> None:
        r: bool = chain.require("zsfx_slow.py")
        with lock:
            results.append(r)

    threads: list[threading.Thread] = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sandbox.calls == [1]
    assert sorted(results) == [False, False, False, True]


def test_bundled_source_appears_in_tracebacks(sandbox: types.ModuleType) -> None:
    _chain({"zsfx_boom.py": b"def boom():\n    raise ValueError('boom')\n"})
    mod = importlib.import_module("zsfx_boom")
    with pytest.raises(ValueError) as excinfo:
        mod.boom()
    rendered: str = "".join(traceback.format_exception(excinfo.value))
    assert "raise ValueError('boom')" in rendered
    assert linecache.getline("/srv/app.pyz/zsfx_boom.py", 1) == "def boom():\n"


def test_install_is_idempotent(sandbox: types.ModuleType) -> None:
    _, chain = _chain({})
    chain.install()
    assert sys.meta_path.count(chain) == 1
    assert sys.meta_path[0] is chain
    chain.uninstall()
    assert chain not in sys.meta_path


# -- bootstrap


def _artifact(tmp_path: pathlib.Path, members: dict[str, bytes], *, quote: bool = False) -> tuple[pathlib.Path, int]:
    prefix: bytes = b"#!/bin/sh\n# launcher stand-in\n"
    archive: bytes = encode_zip(_store(members), compression=6, offset=0 if quote is True else len(prefix))
    if quote is True:
        archive = base64.encodebytes(archive)
    path: pathlib.Path = tmp_path / "app.pyz"
    path.write_bytes(prefix + archive)
    return (path, len(prefix))


def _config(main: str = "main.py", **kwargs: object) -> dict[str, object]:
    config: dict[str, object] = {"main": main, "dequote": None, "simulate_data": None, "sizelimit": LIMIT}
    config.update(kwargs)
    return config


def test_bootstrap_runs_main(tmp_path: pathlib.Path, sandbox: types.ModuleType) -> None:
    path, offset = _artifact(
        tmp_path,
        {
            "main.py": b"import zsfx_tracker\nimport zsfx_helper\nzsfx_tracker.calls.append((__name__, zsfx_helper.X))\n",
            "zsfx_helper.py": b"X = 42\n",
        },
    )
    sys.path[0] = ""
    bootstrap(str(path), offset, _config())

    assert sandbox.calls == [("__main__", 42)]
    assert sys.path[0] == str(tmp_path)
    state: types.ModuleType = sys.modules["__zipsfx__"]
    assert sorted(state.registry.names()) == ["main.py", "zsfx_helper.py"]
    assert state.config["main"] == "main.py"
    assert state.require("zsfx_helper.py") is False
    state.resolvers.uninstall()


def test_bootstrap_with_base64(tmp_path: pathlib.Path, sandbox: types.ModuleType) -> None:
    path, offset = _artifact(tmp_path, {"main.py": b"import zsfx_tracker\nzsfx_tracker.calls.append('b64')\n"}, quote=True)
    bootstrap(str(path), offset, _config(dequote="base64"))
    assert sandbox.calls == ["b64"]
    sys.modules["__zipsfx__"].resolvers.uninstall()


def test_bootstrap_provides_data(tmp_path: pathlib.Path, sandbox: types.ModuleType) -> None:
    main: bytes = b"import zsfx_tracker\ntext = '''\n__END__\n'''\nzsfx_tracker.calls.append(DATA.read())\n__END__\nline one\nline two\n"
    path, offset = _artifact(tmp_path, {"main.py": main})
    bootstrap(str(path), offset, _config(simulate_data=locate_trailing_data(main)))
    assert sandbox.calls == ["line one\nline two\n"]
    sys.modules["__zipsfx__"].resolvers.uninstall()


def test_bootstrap_format_error_exits(
    tmp_path: pathlib.Path, sandbox: types.ModuleType, capsys: pytest.CaptureFixture[str]
) -> None:
    path: pathlib.Path = tmp_path / "app.pyz"
    path.write_bytes(b"launcher\nJUNK")
    with pytest.raises(SystemExit) as excinfo:
        bootstrap(str(path), len(b"launcher\n"), _config())
    assert excinfo.value.code == 255
    assert "Error processing zipped script 'app.pyz': malformed data" in capsys.readouterr().err


def test_bootstrap_missing_main_exits(tmp_path: pathlib.Path, sandbox: types.ModuleType) -> None:
    path, offset = _artifact(tmp_path, {"other.py": b""})
    with pytest.raises(SystemExit) as excinfo:
        bootstrap(str(path), offset, _config())
    assert excinfo.value.code == 255


def test_bootstrap_attaches_note_to_main_errors(tmp_path: pathlib.Path, sandbox: types.ModuleType) -> None:
    path, offset = _artifact(tmp_path, {"main.py": b"raise KeyError('nope')\n"})
    with pytest.raises(KeyError) as excinfo:
        bootstrap(str(path), offset, _config())
    assert any("app.pyz" in note for note in excinfo.value.__notes__)
    sys.modules["__zipsfx__"].resolvers.uninstall()

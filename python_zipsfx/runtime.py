"""Loader runtime embedded into every bundle.

This module is importable like any other (tests and tooling use it that way)
and is also the body of the launcher written in front of the archive: lines
between ``#BEGIN <TAG>`` and ``#END <TAG>`` markers are kept only when the
bundle uses that feature. It must depend on the standard library only and stay
valid Python with any of its regions removed.

At run time the launcher:

- reads the archive that follows it in the artifact (undoing the transport
  quoting if needed),
- registers every member as a lazily loaded module keyed by its logical name,
- installs a resolver chain at the front of ``sys.meta_path`` (bundle first,
  normal resolution second),
- runs the configured main module as ``__main__``.
"""

import importlib
import importlib.abc
import importlib.machinery
import importlib.util
import io
import linecache
import os
import struct
import sys
import threading
import tokenize
import types
from collections.abc import Sequence
from typing import NoReturn
#BEGIN COMPRESSION
import zlib
#END COMPRESSION
#BEGIN QUOTE
import base64
#END QUOTE


FORMAT_ERROR_STATUS: int = 255
DEFAULT_ENCODING: str = "utf-8"

#BEGIN ZIPARCHIVE
LOCAL_FILE_SIGNATURE: bytes = b"PK\x03\x04"
CENTRAL_DIRECTORY_SIGNATURE: bytes = b"PK\x01\x02"
END_OF_CENTRAL_DIRECTORY_SIGNATURE: bytes = b"PK\x05\x06"

FLAG_DEFERRED_LENGTH: int = 0x8
FLAG_UTF8_NAME: int = 0x800
METHOD_STORED: int = 0
METHOD_DEFLATED: int = 8
LENGTH_SENTINEL_64: int = 0xFFFFFFFF
#END ZIPARCHIVE
#BEGIN TEXTARCHIVE
TEXT_ENTRY_TAG: bytes = b"TXD\n"
TEXT_END_TAG: bytes = b"TXE\n"
#END TEXTARCHIVE

_UNLOADED: str = "unloaded"
_LOADING: str = "loading"
_LOADED: str = "loaded"


class FormatError(Exception):
    """Raised when the embedded archive is malformed or unsupported."""


class LoadCycleError(ImportError):
    """Raised when a bundled module is requested again while it is still loading."""


def _runtime_error(argv0: str, message: str) -> NoReturn:
    """Report a fatal archive problem and exit.

    :param argv0: Invocation name of the artifact.
    :param message: Error message.
    """

    sys.stderr.write(f"Error processing zipped script {argv0!r}: {message}\n")
    raise SystemExit(FORMAT_ERROR_STATUS)


class _Cursor:
    """Sequential reader over the archive bytes; short reads are fatal."""

    _data: bytes
    _pos: int

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def read(self, n: int) -> bytes:
        if n == 0:
            return b""
        end: int = self._pos + n
        if end > len(self._data):
            raise FormatError(f"archive truncated: wanted {n} bytes at offset {self._pos}")
        chunk: bytes = self._data[self._pos : end]
        self._pos = end
        return chunk

    def read_until(self, sep: bytes) -> bytes:
        idx: int = self._data.find(sep, self._pos)
        if idx < 0:
            raise FormatError("truncated data")
        chunk: bytes = self._data[self._pos : idx]
        self._pos = idx + len(sep)
        return chunk


#BEGIN QUOTE
def dequote(data: bytes, scheme: str) -> bytes:
    """Undo the transport quoting applied to the archive.

    :param data: Quoted archive bytes.
    :param scheme: Quoting scheme name.
    :returns: Raw archive bytes.
    """

    if scheme == "base64":
        try:
            return base64.decodebytes(data)
        except ValueError as e:
            raise FormatError(f"malformed base64 data: {e}") from e
    raise FormatError(f"unsupported quoting scheme: {scheme!r}")


#END QUOTE
#BEGIN ZIPARCHIVE
def _read_zip_member(cursor: _Cursor, sizelimit: int) -> tuple[str, bytes]:
    """Read one local file record (after its signature).

    :param cursor: Archive cursor.
    :param sizelimit: Maximum compressed and uncompressed member size.
    :returns: ``(name, content)``.
    """

    fields: tuple[int, ...] = struct.unpack("<HHHHHIIIHH", cursor.read(26))
    flags: int = fields[1]
    method: int = fields[2]
    crc: int = fields[5]
    csize: int = fields[6]
    size: int = fields[7]
    raw_name: bytes = cursor.read(fields[8])
    cursor.read(fields[9])

    try:
        name: str = raw_name.decode("utf-8" if flags & FLAG_UTF8_NAME else "cp437")
    except UnicodeDecodeError as e:
        raise FormatError(f"malformed data: bad name: {e}") from e
    if flags & FLAG_DEFERRED_LENGTH:
        raise FormatError(f"{name}: unsupported: deferred length")
    if size == LENGTH_SENTINEL_64 or csize == LENGTH_SENTINEL_64:
        raise FormatError(f"{name}: unsupported: 64bit length")
    if size > sizelimit:
        raise FormatError(f"{name}: too big data (u:{size})")
    if csize > sizelimit:
        raise FormatError(f"{name}: too big data (c:{csize})")

    data: bytes = cursor.read(csize)
    if method == METHOD_STORED:
        if csize != size:
            raise FormatError(f"{name}: malformed data: bad length")
#BEGIN COMPRESSION
    elif method == METHOD_DEFLATED:
        data = _inflate(name, data, size, crc)
#END COMPRESSION
    else:
        raise FormatError(f"{name}: unsupported compression (type {method})")
    return (name, data)


#BEGIN COMPRESSION
def _inflate(name: str, data: bytes, size: int, crc: int) -> bytes:
    """Inflate a raw deflate stream and verify it.

    :param name: Member name (for messages).
    :param data: Compressed payload.
    :param size: Declared uncompressed size.
    :param crc: Declared CRC-32 of the uncompressed data.
    :returns: Uncompressed data.
    """

    d = zlib.decompressobj(-15)
    try:
        out: bytes = d.decompress(data) + d.flush()
    except zlib.error as e:
        raise FormatError(f"{name}: malformed data: {e}") from e
    if len(out) != size:
        raise FormatError(f"{name}: malformed data: bad length")
    if zlib.crc32(out) & 0xFFFFFFFF != crc:
        raise FormatError(f"{name}: inflate failed: crc mismatch")
    return out


#END COMPRESSION
#END ZIPARCHIVE
#BEGIN TEXTARCHIVE
def _read_text_member(cursor: _Cursor) -> tuple[str, bytes]:
    """Read one delimiter-framed record (after its ``TXD`` line).

    :param cursor: Archive cursor.
    :returns: ``(name, content)``.
    """

    sep: bytes = cursor.read_until(b"\n")
    framing: bytes = b"\n" + sep + b"\n"
    name: bytes = cursor.read_until(framing)
    content: bytes = cursor.read_until(framing)
    try:
        return (name.decode("utf-8"), content)
    except UnicodeDecodeError as e:
        raise FormatError(f"malformed data: bad name: {e}") from e


#END TEXTARCHIVE
def parse_archive(data: bytes, sizelimit: int) -> list[tuple[str, bytes]]:
    """Parse the embedded archive into ``(name, content)`` pairs.

    :param data: Archive bytes (already unquoted).
    :param sizelimit: Maximum member size.
    :returns: Members in archive order.
    :raises FormatError: If the archive is malformed, truncated or unsupported.
    """

    cursor: _Cursor = _Cursor(data)
    members: list[tuple[str, bytes]] = []
    while True:
        tag: bytes = cursor.read(4)
#BEGIN ZIPARCHIVE
        if tag == LOCAL_FILE_SIGNATURE:
            members.append(_read_zip_member(cursor, sizelimit))
            continue
        if tag == CENTRAL_DIRECTORY_SIGNATURE:
            break
        if tag == END_OF_CENTRAL_DIRECTORY_SIGNATURE:
            raise FormatError("malformed or empty archive")
#END ZIPARCHIVE
#BEGIN TEXTARCHIVE
        if tag == TEXT_ENTRY_TAG:
            members.append(_read_text_member(cursor))
            continue
        if tag == TEXT_END_TAG:
            break
#END TEXTARCHIVE
        raise FormatError("malformed data")
    return members


def sniff_encoding(code: bytes) -> str:
    """Detect a source encoding from a BOM or coding cookie.

    :param code: Module source bytes.
    :returns: Encoding name, ``utf-8`` when nothing is declared.
    """

    try:
        encoding, _ = tokenize.detect_encoding(io.BytesIO(code).readline)
    except SyntaxError:
        return DEFAULT_ENCODING
    return encoding


def module_name_for(path: str) -> str:
    """Map a logical name like ``pkg/mod.py`` to a dotted module name.

    :param path: Logical name.
    :returns: Dotted module name (``pkg/__init__.py`` maps to ``pkg``).
    """

    stem: str = path[:-3] if path.endswith(".py") else path
    if stem.endswith("/__init__") is True:
        stem = stem[: -len("/__init__")]
    return stem.replace("/", ".")


class BundledModule:
    """A registry entry: module source plus its load-once state.

    State moves ``unloaded -> loading -> loaded``. A second load request from
    the thread that is still loading the module is a cycle; requests from other
    threads wait for the first load to finish.
    """

    spec: str
    code: bytes
    fakepath: str
    encoding: str
    module: types.ModuleType | None

    def __init__(self, spec: str, code: bytes, fakepath: str) -> None:
        self.spec = spec
        self.code = code
        self.fakepath = fakepath
        self.encoding = sniff_encoding(code)
        self.module = None
        self._state: str = _UNLOADED
        self._owner: int | None = None
        self._cond: threading.Condition = threading.Condition()

    def __repr__(self) -> str:
        return f"<BundledModule {self.spec!r} ({len(self.code)} bytes, {self._state})>"

    @property
    def loaded(self) -> bool:
        return self._state == _LOADED

    def source(self, end: int | None = None) -> str:
        return self.code[0:end].decode(self.encoding)

    def load(self, module: types.ModuleType, *, publish: bool = False) -> bool:
        """Execute the module code into ``module`` unless already loaded.

        :param module: Module object to populate.
        :param publish: Also enter ``module`` into ``sys.modules`` while it runs
            (removed again if it fails).
        :returns: ``True`` if the code ran, ``False`` if it was already loaded.
        :raises LoadCycleError: If called again while this thread is loading it.
        """

        me: int = threading.get_ident()
        with self._cond:
            while self._state == _LOADING:
                if self._owner == me:
                    raise LoadCycleError(f"{self.spec}: recursive loading", name=module.__name__, path=self.fakepath)
                self._cond.wait()
            if self._state == _LOADED:
                return False
            self._state = _LOADING
            self._owner = me

        previous: types.ModuleType | None = sys.modules.get(module.__name__)
        if publish is True:
            sys.modules[module.__name__] = module
        try:
            self.run(module)
        except BaseException:
            if publish is True:
                if previous is None:
                    sys.modules.pop(module.__name__, None)
                else:
                    sys.modules[module.__name__] = previous
            with self._cond:
                self._state = _UNLOADED
                self._owner = None
                self._cond.notify_all()
            raise

        with self._cond:
            self.module = module
            self._state = _LOADED
            self._owner = None
            self._cond.notify_all()
        return True

    def run(self, module: types.ModuleType, end: int | None = None) -> None:
        """Execute the module code into ``module`` without the load-once guard.

        :param module: Module object to populate.
        :param end: Optional byte offset where the code stops.
        """

        text: str = self.source(end)
        # Makes tracebacks and inspect work for code that has no file on disk.
        linecache.cache[self.fakepath] = (len(text), None, text.splitlines(True), self.fakepath)
        if getattr(module, "__file__", None) is None:
            module.__file__ = self.fakepath
        code = compile(text, self.fakepath, "exec", dont_inherit=True)
        exec(code, module.__dict__)


class ModuleRegistry:
    """Bundled modules keyed by logical name.

    Built once when the artifact starts and read-only afterwards. Modules appear
    to live below ``root`` (the artifact's own path), so a path is looked up
    after stripping that synthetic root.
    """

    root: str
    _modules: dict[str, BundledModule]

    def __init__(self, root: str) -> None:
        self.root = root.rstrip("/")
        self._modules = {}

    def __contains__(self, name: object) -> bool:
        return name in self._modules

    def __len__(self) -> int:
        return len(self._modules)

    def names(self) -> list[str]:
        return list(self._modules)

    def add(self, name: str, code: bytes) -> BundledModule:
        bundled: BundledModule = BundledModule(name, code, self.fakepath(name))
        self._modules[name] = bundled
        return bundled

    def fakepath(self, name: str) -> str:
        return f"{self.root}/{name}"

    def relative(self, path: str) -> str | None:
        """Strip the synthetic root from ``path``.

        :param path: Absolute fake path or bare logical name.
        :returns: Path relative to the root, ``""`` for the root itself, ``None`` if outside.
        """

        if path == self.root:
            return ""
        if path.startswith(self.root + "/") is True:
            return path[len(self.root) + 1 :]
        return None

    def lookup(self, path: str) -> BundledModule | None:
        rel: str | None = self.relative(path)
        return self._modules.get(path if rel is None else rel)

    def has_directory(self, rel_dir: str) -> bool:
        prefix: str = rel_dir + "/"
        for name in self._modules:
            if name.startswith(prefix) is True:
                return True
        return False


class RegistryResolver(importlib.abc.Loader):
    """Resolver (and loader) for modules held in a :class:`ModuleRegistry`."""

    registry: ModuleRegistry

    def __init__(self, registry: ModuleRegistry) -> None:
        self.registry = registry

    def resolve(
        self,
        fullname: str,
        path: Sequence[str] | None = None,
        target: types.ModuleType | None = None,
    ) -> importlib.machinery.ModuleSpec | None:
        """Find a bundled module, package or namespace package.

        :param fullname: Dotted module name.
        :param path: Parent package ``__path__`` (``None`` for top-level).
        :param target: Unused.
        :returns: A module spec, or ``None`` if the bundle does not provide it.
        """

        modname: str = fullname.rpartition(".")[2]
        bases: list[str] = []
        if path is None:
            bases.append("")
        else:
            for entry in path:
                rel: str | None = self.registry.relative(entry)
                if rel is not None:
                    bases.append(rel)

        for base in bases:
            stem: str = modname if len(base) == 0 else f"{base}/{modname}"
            init_name: str = f"{stem}/__init__.py"
            if init_name in self.registry:
                return self._spec(fullname, init_name, package_dir=stem)
            if f"{stem}.py" in self.registry:
                return self._spec(fullname, f"{stem}.py", package_dir=None)
            if self.registry.has_directory(stem) is True:
                spec = importlib.machinery.ModuleSpec(fullname, None, is_package=True)
                spec.submodule_search_locations = [self.registry.fakepath(stem)]
                return spec
        return None

    def require(self, path: str) -> bool | None:
        """Load a bundled module by path.

        :param path: Logical name or fake path, ``.py`` optional.
        :returns: ``True`` if loaded now, ``False`` if already loaded, ``None`` if not bundled.
        """

        name: str = path if path.endswith(".py") is True else f"{path}.py"
        bundled: BundledModule | None = self.registry.lookup(name)
        if bundled is None:
            return None
        if bundled.loaded is True:
            return False

        fullname: str = module_name_for(bundled.spec)
        package_dir: str | None = None
        if bundled.spec.endswith("/__init__.py") is True:
            package_dir = bundled.spec[: -len("/__init__.py")]
        spec = self._spec(fullname, bundled.spec, package_dir=package_dir)
        module: types.ModuleType = importlib.util.module_from_spec(spec)
        return bundled.load(module, publish=True)

    def create_module(self, spec: importlib.machinery.ModuleSpec) -> types.ModuleType | None:
        bundled: BundledModule | None = self.registry.lookup(spec.origin or "")
        if bundled is not None and bundled.module is not None:
            return bundled.module
        return None

    def exec_module(self, module: types.ModuleType) -> None:
        origin: str = module.__spec__.origin if module.__spec__ is not None else ""
        bundled: BundledModule | None = self.registry.lookup(origin or "")
        if bundled is None:
            raise ImportError(f"{origin}: not in bundle", name=module.__name__)
        bundled.load(module)

    def _spec(self, fullname: str, name: str, *, package_dir: str | None) -> importlib.machinery.ModuleSpec:
        spec = importlib.machinery.ModuleSpec(
            fullname,
            self,
            origin=self.registry.fakepath(name),
            is_package=package_dir is not None,
        )
        spec.has_location = True
        if package_dir is not None:
            spec.submodule_search_locations = [self.registry.fakepath(package_dir)]
        return spec


class DefaultResolver:
    """Resolver delegating to the interpreter's own finders."""

    def resolve(
        self,
        fullname: str,
        path: Sequence[str] | None = None,
        target: types.ModuleType | None = None,
    ) -> importlib.machinery.ModuleSpec | None:
        for finder in list(sys.meta_path):
            if isinstance(finder, ResolverChain):
                continue
            find_spec = getattr(finder, "find_spec", None)
            if find_spec is None:
                continue
            spec = find_spec(fullname, path, target)
            if spec is not None:
                return spec
        return None

    def require(self, path: str) -> bool | None:
        fullname: str = module_name_for(path)
        if fullname in sys.modules:
            return False
        importlib.import_module(fullname)
        return True


class ResolverChain(importlib.abc.MetaPathFinder):
    """Ordered resolvers; the first one that knows a module wins."""

    resolvers: list

    def __init__(self, resolvers: Sequence[object]) -> None:
        self.resolvers = list(resolvers)

    def find_spec(
        self,
        fullname: str,
        path: Sequence[str] | None = None,
        target: types.ModuleType | None = None,
    ) -> importlib.machinery.ModuleSpec | None:
        for resolver in self.resolvers:
            spec = resolver.resolve(fullname, path, target)
            if spec is not None:
                return spec
        return None

    def require(self, path: str) -> bool:
        """Load a module by path, bundle first.

        :param path: Logical name such as ``lib/util.py``.
        :returns: ``True`` if loaded now, ``False`` if it was already loaded.
        """

        for resolver in self.resolvers:
            result: bool | None = resolver.require(path)
            if result is not None:
                return result
        raise ModuleNotFoundError(f"No module for path {path!r}")

    def install(self) -> None:
        if self not in sys.meta_path:
            sys.meta_path.insert(0, self)

    def uninstall(self) -> None:
        if self in sys.meta_path:
            sys.meta_path.remove(self)


#BEGIN SIMULATEDATA
def trailing_data(bundled: BundledModule, start: int) -> io.TextIOWrapper:
    """Expose the bytes after the ``__END__`` line as a text stream.

    :param bundled: Main module.
    :param start: Offset of the first byte after the marker line.
    :returns: Readable text stream.
    """

    return io.TextIOWrapper(io.BytesIO(bundled.code[start:]), encoding=bundled.encoding)


#END SIMULATEDATA
def run_main(registry: ModuleRegistry, config: dict, argv0: str) -> types.ModuleType:
    """Run the configured main module as ``__main__``.

    :param registry: Populated registry.
    :param config: Bundle configuration.
    :param argv0: Invocation name of the artifact, attached to errors.
    :returns: The ``__main__`` module.
    """

    bundled: BundledModule | None = registry.lookup(config["main"])
    if bundled is None:
        raise ImportError(f"{config['main']}: main module not in bundle")

    module: types.ModuleType = types.ModuleType("__main__")
    module.__file__ = bundled.fakepath
    module.__package__ = ""
    module.__builtins__ = __builtins__
    end: int | None = None
#BEGIN SIMULATEDATA
    marker = config.get("simulate_data")
    if marker is not None:
        end = marker[0]
        module.DATA = trailing_data(bundled, marker[1])
#END SIMULATEDATA

    sys.modules["__main__"] = module
    try:
        bundled.run(module, end=end)
    except Exception as exc:
        exc.add_note(f"(while running zipped script {argv0!r})")
        raise
    return module


def bootstrap(script: str, offset: int, config: dict, pkgname: str = "__zipsfx__") -> None:
    """Launcher entry point.

    :param script: Path of the artifact.
    :param offset: Offset of the archive within the artifact.
    :param config: Bundle configuration (``main``, ``dequote``, ``simulate_data``, ``sizelimit``).
    :param pkgname: ``sys.modules`` key under which the runtime state is exposed.
    """

    argv0: str = sys.argv[0] if len(sys.argv) > 0 else script
    try:
        with open(script, "rb") as f:
            f.seek(offset)
            data: bytes = f.read()
#BEGIN QUOTE
        if config.get("dequote") is not None:
            data = dequote(data, config["dequote"])
#END QUOTE
        members: list[tuple[str, bytes]] = parse_archive(data, config["sizelimit"])
    except FormatError as e:
        _runtime_error(argv0, str(e))

    registry: ModuleRegistry = ModuleRegistry(os.path.abspath(script))
    for name, code in members:
        registry.add(name, code)
    if config["main"] not in registry:
        _runtime_error(argv0, f"{config['main']}: main module not in archive")

    chain: ResolverChain = ResolverChain([RegistryResolver(registry), DefaultResolver()])
    chain.install()

    script_dir: str = os.path.dirname(os.path.abspath(script))
    if len(sys.path) > 0 and sys.path[0] in ("", "."):
        sys.path[0] = script_dir

    state: types.ModuleType = types.ModuleType(pkgname)
    state.registry = registry
    state.resolvers = chain
    state.config = config
    state.require = chain.require
    sys.modules[pkgname] = state

    run_main(registry, config, argv0)

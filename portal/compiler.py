"""Script compiler — Lua source files → runtime-independent compiled units.

Sources are parsed once in a private Lua runtime and dumped to bytecode with
``string.dump``. Any number of interpreter instances can then load the same
bytecode without re-parsing.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Iterable, Mapping

from lupa import LuaRuntime

from portal.errors import CompileError

log = logging.getLogger(__name__)

SCRIPT_SUFFIX = ".lua"
WIDGET_ROOT = "widgets"
WIDGET_ENTRY = "widget"

# Runs inside the compiler runtime (encoding=None, so strings stay bytes).
_COMPILE_CHUNK = b"""
function(source, chunkname)
    local fn, err = load(source, chunkname, "t")
    if not fn then
        return nil, err
    end
    return string.dump(fn)
end
"""


def normalize_path(path: str | Path) -> str:
    """Canonical virtual path: posix separators, no leading slash, lowercase."""
    p = str(path).strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/").lower()


def entry_for(virtual_path: str) -> str:
    """Entry function for a unit: ``widget`` for widgets, else the file stem."""
    vp = PurePosixPath(normalize_path(virtual_path))
    if vp.parts and vp.parts[0] == WIDGET_ROOT:
        return WIDGET_ENTRY
    return vp.stem


@dataclass(frozen=True, slots=True)
class CompiledUnit:
    path: str            # normalized virtual path
    source_path: str     # physical file it was compiled from
    bytecode: bytes
    entry: str
    origin: str = "primary"  # "primary" or an extension id

    @property
    def kind_root(self) -> str:
        return self.path.split("/", 1)[0]


# ── Registry ─────────────────────────────────────────────────────


class CompiledUnitRegistry:
    """Case-insensitive virtual path → CompiledUnit map.

    Writers build a fresh dict and swap the reference, so readers never lock
    and always see a complete snapshot.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._units: Mapping[str, CompiledUnit] = MappingProxyType({})
        self._write_lock = threading.Lock()

    def get(self, path: str) -> CompiledUnit | None:
        return self._units.get(normalize_path(path))

    def exists(self, path: str) -> bool:
        return normalize_path(path) in self._units

    def paths(self) -> list[str]:
        return sorted(self._units)

    def snapshot(self) -> Mapping[str, CompiledUnit]:
        return self._units

    def __len__(self) -> int:
        return len(self._units)

    def replace(self, units: Mapping[str, CompiledUnit]) -> None:
        """Bulk replace (primary trees)."""
        fresh = {normalize_path(k): v for k, v in units.items()}
        with self._write_lock:
            self._units = MappingProxyType(fresh)
        log.debug("Registry %s replaced: %d units", self.name, len(fresh))

    def merge(self, units: Mapping[str, CompiledUnit]) -> None:
        """Incremental merge; incoming entries win on conflict."""
        with self._write_lock:
            fresh = dict(self._units)
            for k, v in units.items():
                fresh[normalize_path(k)] = v
            self._units = MappingProxyType(fresh)

    def swap_prefix(self, prefix: str, units: Mapping[str, CompiledUnit]) -> None:
        """Replace every entry under ``prefix`` with ``units`` in one swap."""
        prefix = normalize_path(prefix).rstrip("/") + "/"
        with self._write_lock:
            fresh = {k: v for k, v in self._units.items() if not k.startswith(prefix)}
            for k, v in units.items():
                fresh[normalize_path(k)] = v
            self._units = MappingProxyType(fresh)

    def drop_prefix(self, prefix: str) -> None:
        self.swap_prefix(prefix, {})


# ── Compiler ─────────────────────────────────────────────────────


class ProtoCompiler:
    """Compiles Lua files into CompiledUnits using a private runtime."""

    def __init__(self) -> None:
        self._lua = LuaRuntime(encoding=None, unpack_returned_tuples=True)
        self._compile = self._lua.eval(_COMPILE_CHUNK)
        self._lock = threading.Lock()

    def compile_source(self, source: bytes | str, chunkname: str) -> bytes:
        """Compile source text to bytecode. Raises CompileError."""
        if isinstance(source, str):
            source = source.encode("utf-8")
        with self._lock:
            result = self._compile(source, f"@{chunkname}".encode("utf-8"))
        if isinstance(result, tuple):
            err = result[1]
            if isinstance(err, bytes):
                err = err.decode("utf-8", "replace")
            raise CompileError(chunkname, str(err))
        return result

    def compile_one(self, path: str | Path, virtual_path: str | None = None,
                    origin: str = "primary") -> CompiledUnit:
        """Compile a single file. ``virtual_path`` defaults to ``path``."""
        path = Path(path)
        try:
            source = path.read_bytes()
        except OSError as e:
            raise CompileError(str(path), e.strerror or str(e)) from e
        vpath = normalize_path(virtual_path if virtual_path is not None else path.as_posix())
        bytecode = self.compile_source(source, path.as_posix())
        return CompiledUnit(
            path=vpath,
            source_path=str(path),
            bytecode=bytecode,
            entry=entry_for(vpath),
            origin=origin,
        )

    def compile_tree(self, directory: str | Path, prefix: str,
                     origin: str = "primary") -> dict[str, CompiledUnit]:
        """Compile every script under ``directory`` as ``<prefix>/<relative>``.

        All-or-nothing: the first failure raises and nothing is returned.
        """
        directory = Path(directory)
        if not directory.is_dir():
            raise CompileError(str(directory), "directory not found")
        units: dict[str, CompiledUnit] = {}
        for script in iter_scripts(directory):
            rel = script.relative_to(directory).as_posix()
            vpath = normalize_path(f"{prefix}/{rel}")
            units[vpath] = self.compile_one(script, vpath, origin=origin)
        log.debug("Compiled %d scripts from %s as %s/", len(units), directory, prefix)
        return units

    def compile_all(self, root_dir: str | Path) -> dict[str, CompiledUnit]:
        """Compile a primary tree, keyed relative to its parent (``pages/...``)."""
        root = Path(root_dir)
        return self.compile_tree(root, root.name, origin="primary")


def iter_scripts(directory: Path) -> Iterable[Path]:
    """Script files under ``directory`` in deterministic walk order."""
    return (p for p in sorted(directory.rglob(f"*{SCRIPT_SUFFIX}")) if p.is_file())

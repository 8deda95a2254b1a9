"""Extension resolution — layer enabled extension trees over the primary ones.

An enabled extension ``<id>`` of kind ``page`` contributes every script under
``extensions/<id>/pages/`` at the virtual path ``pages/<relative>``, so it can
override or add pages without call-site changes. Extensions are applied in
ascending id order (numeric ids numerically); the last one to provide a path
wins.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from portal.compiler import CompiledUnit, normalize_path, iter_scripts
from portal.db import EXTENSION_KINDS
from portal.errors import ColdStartError, CompileError, ExtensionLoadError

if TYPE_CHECKING:
    from portal.compiler import CompiledUnitRegistry, ProtoCompiler
    from portal.db import DataLayer
    from portal.pool import ScriptState, StatePool

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ExtensionRecord:
    extension_id: str
    kind: str
    enabled: bool = True

    @property
    def merge_key(self) -> tuple[int, int, str]:
        if self.extension_id.isdigit():
            return (0, int(self.extension_id), "")
        return (1, 0, self.extension_id)


@dataclass(slots=True)
class ResolveReport:
    kind: str
    units: int = 0
    loaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed_widgets: list[str] = field(default_factory=list)


# ── Widget list ──────────────────────────────────────────────────


class WidgetList:
    """Ordered, thread-safe list of active widget names."""

    def __init__(self, names: Iterable[str] = ()) -> None:
        self._lock = threading.Lock()
        self._names: list[str] = list(dict.fromkeys(n.lower() for n in names))
        self._base: frozenset[str] = frozenset(self._names)

    def load(self, widgets_dir: str | Path) -> list[str]:
        """Reset the list from a primary widgets directory (one widget per script)."""
        widgets_dir = Path(widgets_dir)
        names = [p.stem.lower() for p in iter_scripts(widgets_dir)] if widgets_dir.is_dir() else []
        with self._lock:
            self._names = list(dict.fromkeys(names))
            self._base = frozenset(self._names)
        log.info("Widget list loaded: %d widgets", len(self._names))
        return list(self._names)

    def add(self, name: str) -> None:
        name = name.lower()
        with self._lock:
            if name not in self._names:
                self._names.append(name)

    def remove(self, name: str) -> bool:
        name = name.lower()
        with self._lock:
            if name in self._names:
                self._names.remove(name)
                return True
            return False

    def is_base(self, name: str) -> bool:
        """True for names from the primary widgets directory."""
        return name.lower() in self._base

    def names(self) -> list[str]:
        with self._lock:
            return list(self._names)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return isinstance(name, str) and name.lower() in self._names

    def __len__(self) -> int:
        with self._lock:
            return len(self._names)


# ── Resolver ─────────────────────────────────────────────────────


class ExtensionResolver:
    """Compiles enabled extensions into the extension registry, one kind at a time."""

    def __init__(self, compiler: ProtoCompiler, registry: CompiledUnitRegistry,
                 pool: StatePool, data: DataLayer, widgets: WidgetList, *,
                 base_dir: str | Path, table_prefix: str = "portal",
                 prewarm_widgets: bool = True) -> None:
        self.compiler = compiler
        self.registry = registry
        self.pool = pool
        self.data = data
        self.widgets = widgets
        self.extensions_dir = Path(base_dir) / "extensions"
        self.table_prefix = table_prefix
        self.prewarm_widgets = prewarm_widgets
        self._rebuild_lock = threading.Lock()
        self._extension_widgets: set[str] = set()

    def enabled_extensions(self, kind: str) -> list[ExtensionRecord]:
        rows = self.data.fetch_enabled_extensions(self.table_prefix, kind)
        records = [
            ExtensionRecord(str(r["extension_id"]), kind, bool(r.get("enabled", True)))
            for r in rows
        ]
        return sorted((r for r in records if r.enabled), key=lambda r: r.merge_key)

    def resolve(self, kind: str) -> ResolveReport:
        """Rebuild the extension entries for ``kind``.

        Page failures raise ExtensionLoadError and leave the registry as it
        was. Widget failures only drop the failing widget.
        """
        if kind not in EXTENSION_KINDS:
            raise ValueError(f"unknown extension kind: {kind!r}")
        root = f"{kind}s"
        report = ResolveReport(kind=kind)

        with self._rebuild_lock:
            units: dict[str, CompiledUnit] = {}
            for record in self.enabled_extensions(kind):
                directory = self.extensions_dir / record.extension_id / root
                if not directory.is_dir():
                    log.error("Missing %s directory in extension %s", root, record.extension_id)
                    report.skipped.append(record.extension_id)
                    continue
                for script in iter_scripts(directory):
                    vpath = normalize_path(f"{root}/{script.relative_to(directory).as_posix()}")
                    try:
                        unit = self.compiler.compile_one(script, vpath, origin=record.extension_id)
                    except CompileError as e:
                        if kind == "widget":
                            log.error("Cannot load widget in extension %s: %s",
                                      record.extension_id, e)
                            report.failed_widgets.append(script.stem.lower())
                            continue
                        raise ExtensionLoadError(record.extension_id, str(e)) from e
                    units[vpath] = unit
                report.loaded.append(record.extension_id)

            warmed: dict[str, ScriptState] = {}
            if kind == "widget" and self.prewarm_widgets:
                for vpath, unit in list(units.items()):
                    try:
                        warmed[vpath] = self.pool.build(unit)
                    except ColdStartError as e:
                        log.error("Cannot load widget in extension %s: %s", unit.origin, e)
                        del units[vpath]
                        report.failed_widgets.append(Path(vpath).stem)

            self.registry.swap_prefix(root, units)
            self.pool.invalidate(f"{root}/")
            for vpath, state in warmed.items():
                self.pool.checkin(state, vpath)

            if kind == "widget":
                self._sync_widgets(units, report.failed_widgets)

        report.units = len(units)
        log.info("Resolved %s extensions: %d units from %s (skipped: %s)",
                 kind, report.units, report.loaded or "none", report.skipped or "none")
        return report

    def _sync_widgets(self, units: dict[str, CompiledUnit], failed: list[str]) -> None:
        provided = {Path(vpath).stem for vpath in units}
        for name in sorted(self._extension_widgets - provided):
            if not self.widgets.is_base(name):
                self.widgets.remove(name)
        for vpath in units:
            self.widgets.add(Path(vpath).stem)
        for name in failed:
            if name not in provided:
                self.widgets.remove(name)
        self._extension_widgets = provided

    def resolve_all(self) -> list[ResolveReport]:
        return [self.resolve(kind) for kind in EXTENSION_KINDS]

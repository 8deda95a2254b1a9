"""Interpreter pool — reusable Lua states per virtual path.

checkout() pops the most recently returned idle state for a path (warm
first) or cold-starts a new one by loading the compiled unit and running its
top-level chunk. checkin() clears per-request state and pushes it back.
A state is never handed to two callers at once.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from lupa import LuaError, LuaRuntime

from portal.compiler import CompiledUnit, normalize_path
from portal.errors import BindingError, ColdStartError, UnitNotFoundError
from portal.lua_env import DatabaseBinding

log = logging.getLogger(__name__)

_LOAD_CHUNK = """
function(bytecode)
    local fn, err = load(bytecode, nil, "b")
    if not fn then
        error(err, 0)
    end
    return fn
end
"""


class ScriptState:
    """One Lua runtime bound to one compiled unit."""

    def __init__(self, unit: CompiledUnit) -> None:
        self.unit = unit
        self.lua = LuaRuntime(unpack_returned_tuples=True)
        self.db = DatabaseBinding(None, self.lua)
        self.created_at = time.monotonic()
        self.last_used = self.created_at
        self.uses = 0
        self.pooled = False

    @property
    def in_transaction(self) -> bool:
        return self.db.in_transaction

    def boot(self) -> None:
        """Load the unit's bytecode and run its top-level chunk once."""
        chunk = self.lua.eval(_LOAD_CHUNK)(self.unit.bytecode)
        chunk()

    def entry(self, name: str | None = None) -> Any:
        return self.lua.globals()[name or self.unit.entry]

    def reset(self) -> None:
        self.db.reset()

    def __repr__(self) -> str:
        return f"<ScriptState {self.unit.path} uses={self.uses}>"


class StatePool:
    """Path → LIFO stack of idle ScriptStates behind a single lock.

    ``max_idle`` caps idle states kept per path and ``idle_timeout`` evicts
    states idle for longer than that many seconds. Both default to unbounded.
    """

    def __init__(self, resolve: Callable[[str], CompiledUnit | None],
                 installer: Callable[[ScriptState], None] | None = None, *,
                 max_idle: int | None = None,
                 idle_timeout: float | None = None,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._resolve = resolve
        self._installer = installer
        self._idle: dict[str, list[ScriptState]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.max_idle = max_idle
        self.idle_timeout = idle_timeout
        self.cold_starts = 0
        self.reuses = 0
        self.evictions = 0

    # ── Checkout / checkin ───────────────────────────────────────

    def checkout(self, path: str) -> ScriptState:
        path = normalize_path(path)
        current = self._resolve(path)
        if current is None:
            raise UnitNotFoundError(path)
        with self._lock:
            self._evict_expired_locked(path)
            stack = self._idle.get(path)
            while stack:
                state = stack.pop()
                state.pooled = False
                if state.unit is not current:
                    self.evictions += 1
                    continue
                self.reuses += 1
                state.uses += 1
                return state
        state = self.build(current)
        state.uses += 1
        return state

    def checkin(self, state: ScriptState, path: str) -> None:
        path = normalize_path(path)
        if state.pooled:
            raise RuntimeError(f"{state!r} is already checked in")
        state.reset()
        if self._resolve(path) is not state.unit:
            log.debug("Dropping stale state for %s", path)
            self.discard(state)
            return
        with self._lock:
            stack = self._idle.setdefault(path, [])
            if self.max_idle is not None and len(stack) >= self.max_idle:
                self.evictions += 1
                return
            state.last_used = self._clock()
            state.pooled = True
            stack.append(state)
            self._evict_expired_locked(path)

    def discard(self, state: ScriptState) -> None:
        """Drop a state that must not be reused."""
        state.reset()
        with self._lock:
            self.evictions += 1
        log.debug("Discarded %r", state)

    # ── Construction ─────────────────────────────────────────────

    def build(self, unit: CompiledUnit) -> ScriptState:
        """Cold start: fresh runtime, application globals, top-level chunk."""
        state = ScriptState(unit)
        try:
            if self._installer is not None:
                self._installer(state)
            state.boot()
        except (LuaError, BindingError) as e:
            raise ColdStartError(unit.path, str(e)) from e
        with self._lock:
            self.cold_starts += 1
        log.debug("Cold start: %s", unit.path)
        return state

    def warm(self, path: str) -> None:
        """Build one state for ``path`` and park it in the pool."""
        path = normalize_path(path)
        unit = self._resolve(path)
        if unit is None:
            raise UnitNotFoundError(path)
        self.checkin(self.build(unit), path)

    # ── Eviction ─────────────────────────────────────────────────

    def _evict_expired_locked(self, path: str) -> int:
        if self.idle_timeout is None:
            return 0
        stack = self._idle.get(path)
        if not stack:
            return 0
        deadline = self._clock() - self.idle_timeout
        # Bottom of the stack holds the longest-idle states.
        expired = 0
        while expired < len(stack) and stack[expired].last_used < deadline:
            stack[expired].pooled = False
            expired += 1
        if expired:
            del stack[:expired]
            self.evictions += expired
        return expired

    def evict_idle(self) -> int:
        """Evict every state idle past ``idle_timeout``. Returns the count."""
        with self._lock:
            return sum(self._evict_expired_locked(p) for p in list(self._idle))

    def invalidate(self, prefix: str | None = None) -> int:
        """Drop idle states (all, or those whose path starts with ``prefix``)."""
        norm = normalize_path(prefix) if prefix else ""
        with self._lock:
            dropped = 0
            for path in list(self._idle):
                if path.startswith(norm):
                    for state in self._idle.pop(path):
                        state.pooled = False
                        dropped += 1
            self.evictions += dropped
        if dropped:
            log.info("Invalidated %d idle states under '%s'", dropped, norm or "*")
        return dropped

    # ── Info ─────────────────────────────────────────────────────

    def idle_count(self, path: str | None = None) -> int:
        with self._lock:
            if path is not None:
                return len(self._idle.get(normalize_path(path), []))
            return sum(len(s) for s in self._idle.values())

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "idle": {p: len(s) for p, s in sorted(self._idle.items()) if s},
                "cold_starts": self.cold_starts,
                "reuses": self.reuses,
                "evictions": self.evictions,
            }

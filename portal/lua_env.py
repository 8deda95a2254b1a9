"""Application globals installed into every Lua interpreter instance.

Provides DatabaseBinding (the ``db`` global), ScriptLogger (``log``),
PasswordHasher (``crypto``) and the Lua ↔ Python value conversion helpers
shared by the bridge and dispatcher.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

import bcrypt
from lupa import LuaRuntime, lua_type

from portal.errors import ArgumentTypeError, BindingError, DataAccessError

if TYPE_CHECKING:
    from portal.bridge import HostObjectBridge
    from portal.db import DataLayer
    from portal.pool import ScriptState

log = logging.getLogger(__name__)


# ── Value conversion ─────────────────────────────────────────────


def lua_to_python(val: Any) -> Any:
    """Convert Lua tables back to Python lists (1..n keys) or dicts."""
    if val is None or isinstance(val, (bool, str, bytes)):
        return val
    if isinstance(val, float) and val.is_integer():
        return int(val)
    if isinstance(val, (int, float)):
        return val
    if lua_type(val) == "table":
        items = [(lua_to_python(k), lua_to_python(v)) for k, v in val.items()]
        keys = [k for k, _ in items]
        if keys and keys == list(range(1, len(keys) + 1)):
            return [v for _, v in items]
        return dict(items)
    return val


def to_lua(lua: LuaRuntime | None, val: Any) -> Any:
    """Convert Python dicts/lists to Lua tables; without a runtime return as is."""
    if lua is None:
        return val
    if isinstance(val, (dict, list, tuple)):
        return lua.table_from(val, recursive=True)
    return val


def is_number(val: Any) -> bool:
    return isinstance(val, (int, float)) and not isinstance(val, bool)


# ── db global ────────────────────────────────────────────────────


class DatabaseBinding:
    """The ``db`` object scripts use for ad-hoc SQL.

    ``in_transaction`` is the open-transaction marker; the pool clears it
    (rolling back anything left open) before an instance is reused.
    """

    def __init__(self, data: DataLayer | None, lua: LuaRuntime | None = None) -> None:
        self._data = data
        self._lua = lua
        self._tx: Any = None
        self.in_transaction = False

    def _target(self) -> Any:
        if self._tx is not None:
            return self._tx
        if self._data is None:
            raise DataAccessError("no database configured")
        return self._data

    @staticmethod
    def _check_sql(sql: Any) -> str:
        if not isinstance(sql, str):
            raise ArgumentTypeError("Invalid query type. Expected string")
        return sql

    def query(self, sql: Any = None, *args: Any) -> Any:
        """Run a query; returns a table of rows, or nil when there are none."""
        rows = self._target().fetch(self._check_sql(sql), *[lua_to_python(a) for a in args])
        if not rows:
            return None
        return to_lua(self._lua, rows)

    def single_query(self, sql: Any = None, *args: Any) -> Any:
        row = self._target().fetchrow(self._check_sql(sql), *[lua_to_python(a) for a in args])
        if row is None:
            return None
        return to_lua(self._lua, row)

    def execute(self, sql: Any = None, *args: Any) -> str:
        return self._target().execute(self._check_sql(sql), *[lua_to_python(a) for a in args])

    def begin(self) -> None:
        if self.in_transaction:
            raise BindingError("A transaction is already open")
        if self._data is None:
            raise DataAccessError("no database configured")
        self._tx = self._data.begin()
        self.in_transaction = True

    def commit(self) -> None:
        if not self.in_transaction:
            raise BindingError("No open transaction to commit")
        tx, self._tx = self._tx, None
        self.in_transaction = False
        if tx is not None:
            tx.commit()

    def rollback(self) -> None:
        if not self.in_transaction:
            raise BindingError("No open transaction to roll back")
        tx, self._tx = self._tx, None
        self.in_transaction = False
        if tx is not None:
            tx.rollback()

    def reset(self) -> None:
        """Roll back whatever a script left open and clear the marker."""
        tx, self._tx = self._tx, None
        was_open = self.in_transaction
        self.in_transaction = False
        if was_open and tx is not None:
            log.warning("Rolling back transaction left open by script")
            try:
                tx.rollback()
            except DataAccessError as e:
                log.error("Rollback of abandoned transaction failed: %s", e)


# ── log global ───────────────────────────────────────────────────


class ScriptLogger:
    """The ``log`` object scripts write to."""

    def __init__(self, name: str) -> None:
        self._log = logging.getLogger(f"portal.script.{name}")

    def debug(self, msg: Any = None) -> None:
        self._log.debug("%s", msg)

    def info(self, msg: Any = None) -> None:
        self._log.info("%s", msg)

    def warning(self, msg: Any = None) -> None:
        self._log.warning("%s", msg)

    def error(self, msg: Any = None) -> None:
        self._log.error("%s", msg)


# ── crypto global ────────────────────────────────────────────────


class PasswordHasher:
    """The ``crypto`` object: bcrypt password hashing for account scripts."""

    def hash_password(self, password: Any = None) -> str:
        if not isinstance(password, str):
            raise ArgumentTypeError("Invalid password type. Expected string")
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

    def check_password(self, password: Any = None, stored_hash: Any = None) -> bool:
        if not isinstance(password, str) or not isinstance(stored_hash, str):
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
        except ValueError:
            log.warning("Malformed password hash")
            return False


# ── Installer ────────────────────────────────────────────────────


class ApplicationEnv:
    """Installs the application globals into a fresh ScriptState."""

    def __init__(self, data: DataLayer | None = None,
                 bridge: HostObjectBridge | None = None,
                 app_config: dict[str, Any] | None = None,
                 lib_dirs: Iterable[str | Path] = ()) -> None:
        self.data = data
        self.bridge = bridge
        self.app_config = app_config or {}
        self.lib_dirs = [Path(d) for d in lib_dirs]

    def __call__(self, state: ScriptState) -> None:
        lua = state.lua
        g = lua.globals()

        state.db = DatabaseBinding(self.data, lua)
        g["db"] = state.db
        g["log"] = ScriptLogger(state.unit.path)
        g["crypto"] = PasswordHasher()
        g["app"] = to_lua(lua, self.app_config)

        package = g["package"]
        if self.lib_dirs and package is not None:
            extra = ";".join(f"{d.as_posix()}/?.lua" for d in self.lib_dirs)
            package["path"] = f"{extra};{package['path']}"

        if self.bridge is not None:
            self.bridge.install(lua)

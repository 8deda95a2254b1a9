"""Host object bridge — players and accounts as script-visible handles.

A handle pairs the live backing entity with a snapshot of its exported
fields. Field reads (``player.level``) use the snapshot; methods
(``player:get_bank_balance()``) go to the data layer. Every mutation refreshes
the entity and the snapshot before returning.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field, fields as dataclass_fields
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Iterable

from lupa import LuaRuntime, lua_type

from portal.errors import (
    ArgumentTypeError,
    BindingNotFoundError,
    DataAccessError,
    FieldNotAllowedError,
)
from portal.lua_env import is_number, to_lua

if TYPE_CHECKING:
    from portal.db import DataLayer

log = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


# ── Entities (explicit export lists) ─────────────────────────────


@dataclass(slots=True)
class Player:
    EXPORTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "id", "name", "account_id", "level", "vocation", "sex",
        "experience", "town_id", "balance", "cap", "lastlogin",
    )

    id: int
    name: str
    account_id: int
    level: int = 1
    vocation: int = 0
    sex: int = 0
    experience: int = 0
    town_id: int = 0
    balance: int = 0
    cap: int = 0
    lastlogin: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Player:
        return _from_row(cls, row)

    def export(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.EXPORTED_FIELDS}


@dataclass(slots=True)
class Account:
    EXPORTED_FIELDS: ClassVar[tuple[str, ...]] = (
        "id", "name", "email", "premium_ends_at", "creation",
    )

    id: int
    name: str
    email: str = ""
    premium_ends_at: int = 0
    creation: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Account:
        return _from_row(cls, row)

    def export(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.EXPORTED_FIELDS}


def _from_row(cls: Any, row: dict[str, Any]) -> Any:
    known = {f.name for f in dataclass_fields(cls)} - {"extra"}
    kwargs = {k: v for k, v in row.items() if k in known and v is not None}
    extra = {k: v for k, v in row.items() if k not in known}
    return cls(**kwargs, extra=extra)


# ── Argument checks ──────────────────────────────────────────────


def _require_int(value: Any, what: str) -> int:
    if not is_number(value):
        raise ArgumentTypeError(f"Invalid {what} type. Expected number")
    if isinstance(value, float):
        if not value.is_integer():
            raise ArgumentTypeError(f"Invalid {what}. Expected whole number")
        value = int(value)
    return value


def _require_str(value: Any, what: str) -> str:
    if not isinstance(value, str):
        raise ArgumentTypeError(f"Invalid {what} type. Expected string")
    return value


def _require_ident(value: Any, kind: str) -> int | str:
    if isinstance(value, str):
        return value
    if is_number(value):
        return _require_int(value, f"{kind} id")
    raise ArgumentTypeError(f"Invalid {kind} name or id")


def _scalar(value: Any, what: str) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if is_number(value):
        return int(value) if isinstance(value, float) and value.is_integer() else value
    if lua_type(value) is not None:
        raise ArgumentTypeError(f"Invalid {what} type. Expected string, number or boolean")
    raise ArgumentTypeError(f"Invalid {what} type")


def _plain(value: Any) -> Any:
    """Values Lua can hold natively; anything else is stringified."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


# ── Handles ──────────────────────────────────────────────────────


class _Handle:
    TABLE: ClassVar[str]
    KIND: ClassVar[str]

    def __init__(self, bridge: HostObjectBridge, entity: Any,
                 lua: LuaRuntime | None = None) -> None:
        self._bridge = bridge
        self._entity = entity
        self._lua = lua
        self.fields = entity.export()

    def __getattr__(self, name: str) -> Any:
        try:
            return self.__dict__["fields"][name]
        except KeyError:
            raise AttributeError(name) from None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._entity.id} {self._entity.name!r}>"

    @property
    def entity(self) -> Any:
        return self._entity

    def _fetch(self, ident: int | str) -> dict[str, Any] | None:
        raise NotImplementedError

    def refresh(self) -> None:
        """Reload the backing entity and its field snapshot."""
        row = self._bridge.call(f"reload {self.KIND}", self._fetch, self._entity.id)
        if row is None:
            raise BindingNotFoundError(f"{self.KIND.capitalize()} {self._entity.id} no longer exists")
        self._entity = type(self._entity).from_row(row)
        self.fields = self._entity.export()

    def get_fields(self) -> Any:
        return to_lua(self._lua, dict(self.fields))

    # ── Custom fields (column catalog allow-list) ────────────────

    def get_custom_field(self, name: Any = None) -> Any:
        """Read any column of the backing row; nil for unknown columns."""
        name = _require_str(name, "field name")
        if name not in self._bridge.columns(self.TABLE):
            log.debug("Custom field read rejected: %s.%s", self.TABLE, name)
            return None
        value = self._bridge.call(
            f"get custom field {name}",
            self._bridge.data.fetch_custom_field, self.TABLE, name, self._entity.id,
        )
        return _plain(value)

    def set_custom_field(self, name: Any = None, value: Any = None) -> None:
        """Write a column of the backing row; unknown columns are rejected."""
        name = _require_str(name, "field name")
        value = _scalar(value, "field value")
        if name not in self._bridge.columns(self.TABLE):
            raise FieldNotAllowedError(self.TABLE, name)
        self._bridge.call(
            f"set custom field {name}",
            self._bridge.data.update_custom_field, self.TABLE, name, self._entity.id, value,
        )
        self.refresh()


class AccountHandle(_Handle):
    TABLE = "accounts"
    KIND = "account"

    def _fetch(self, ident: int | str) -> dict[str, Any] | None:
        return self._bridge.data.fetch_account(ident)

    def get_id(self) -> int:
        return self._entity.id

    def get_name(self) -> str:
        return self._entity.name

    def get_email(self) -> str:
        return self._entity.email

    def get_premium_ends_at(self) -> int:
        self.refresh()
        return int(self._entity.premium_ends_at or 0)

    def get_premium_time(self) -> int:
        """Remaining premium seconds (0 when expired)."""
        return max(0, self.get_premium_ends_at() - int(self._bridge.now()))

    def get_premium_days(self) -> int:
        return math.ceil(self.get_premium_time() / SECONDS_PER_DAY)

    def is_premium(self) -> bool:
        return self.get_premium_time() > 0

    def get_players(self) -> Any:
        rows = self._bridge.call(
            "get account players", self._bridge.data.fetch_account_players, self._entity.id
        )
        return to_lua(self._lua, [r["name"] for r in rows])


class PlayerHandle(_Handle):
    TABLE = "players"
    KIND = "player"

    def _fetch(self, ident: int | str) -> dict[str, Any] | None:
        return self._bridge.data.fetch_player(ident)

    def get_name(self) -> str:
        return self._entity.name

    def get_level(self) -> int:
        return self._entity.level

    def get_gender(self) -> int:
        return self._entity.sex

    def get_account_id(self) -> int:
        return self._entity.account_id

    def get_account(self) -> AccountHandle:
        return self._bridge.bind_account(self._entity.account_id, self._lua)

    def get_guild(self) -> int | None:
        """Guild id, or nil when the player is not in a guild."""
        return self._bridge.call(
            "retrieve player guild", self._bridge.data.fetch_guild_id, self._entity.id
        )

    def get_bank_balance(self) -> int:
        balance = self._bridge.call(
            "get player bank balance", self._bridge.data.fetch_balance, self._entity.id
        )
        if balance is None:
            raise BindingNotFoundError(f"Player {self._entity.id} no longer exists")
        return balance

    def set_bank_balance(self, balance: Any = None) -> None:
        balance = _require_int(balance, "balance")
        if balance < 0:
            raise ArgumentTypeError("Invalid balance. Expected a non-negative number")
        self._bridge.call(
            "update player balance", self._bridge.data.update_balance, self._entity.id, balance
        )
        self.refresh()

    def is_online(self) -> bool:
        return bool(self._bridge.call(
            "get player online status", self._bridge.data.is_online, self._entity.id
        ))

    def get_storage_value(self, key: Any = None) -> int | None:
        key = _require_int(key, "key")
        return self._bridge.call(
            f"get player storage value ({key})",
            self._bridge.data.fetch_storage_value, self._entity.id, key,
        )

    def set_storage_value(self, key: Any = None, value: Any = None) -> None:
        key = _require_int(key, "key")
        value = _require_int(value, "value")
        self._bridge.call(
            "set player storage value",
            self._bridge.data.upsert_storage_value, self._entity.id, key, value,
        )
        self.refresh()

    def get_vocation(self) -> Any:
        voc = self._bridge.vocations.get(self._entity.vocation)
        if voc is None:
            raise BindingNotFoundError("Cannot find player vocation")
        return to_lua(self._lua, dict(voc))

    def get_town(self) -> Any:
        town = self._bridge.towns.get(self._entity.town_id)
        if town is None:
            raise BindingNotFoundError("Cannot find player town")
        return to_lua(self._lua, dict(town))

    def get_experience(self) -> int:
        self.refresh()
        return self._entity.experience

    def get_capacity(self) -> int:
        self.refresh()
        return self._entity.cap

    def get_premium_ends_at(self) -> int:
        return self.get_account().get_premium_ends_at()

    def get_premium_time(self) -> int:
        return self.get_account().get_premium_time()

    def get_premium_days(self) -> int:
        return self.get_account().get_premium_days()


# ── Bridge ───────────────────────────────────────────────────────


class HostObjectBridge:
    """Binds players/accounts for scripts and installs the Lua constructors."""

    def __init__(self, data: DataLayer, *,
                 vocations: Iterable[dict[str, Any]] = (),
                 towns: Iterable[dict[str, Any]] = (),
                 clock: Callable[[], float] = time.time) -> None:
        self.data = data
        self.vocations = {int(v["id"]): dict(v) for v in vocations}
        self.towns = {int(t["id"]): dict(t) for t in towns}
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def call(self, what: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a data layer call, tagging failures with what was attempted."""
        try:
            return fn(*args)
        except DataAccessError as e:
            raise DataAccessError(f"Cannot {what}: {e}") from e

    def columns(self, table: str) -> set[str]:
        """Live column catalog of ``table``; queried on every call."""
        return set(self.call(
            "get list of column names from information_schema",
            self.data.fetch_column_names, table,
        ))

    def bind_player(self, ident: Any, lua: LuaRuntime | None = None) -> PlayerHandle:
        ident = _require_ident(ident, "player")
        row = self.call("load player", self.data.fetch_player, ident)
        if row is None:
            raise BindingNotFoundError(f"Player {ident!r} not found")
        return PlayerHandle(self, Player.from_row(row), lua)

    def bind_account(self, ident: Any, lua: LuaRuntime | None = None) -> AccountHandle:
        ident = _require_ident(ident, "account")
        row = self.call("load account", self.data.fetch_account, ident)
        if row is None:
            raise BindingNotFoundError(f"Account {ident!r} not found")
        return AccountHandle(self, Account.from_row(row), lua)

    def install(self, lua: LuaRuntime) -> None:
        """Register ``Player(ident)`` and ``Account(ident)`` in ``lua``."""
        g = lua.globals()
        g["Player"] = lambda ident=None: self.bind_player(ident, lua)
        g["Account"] = lambda ident=None: self.bind_account(ident, lua)

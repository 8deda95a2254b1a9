"""Shared fixtures — in-memory data layer and script tree helpers."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import pytest

from portal.errors import DataAccessError


class FakeTransaction:
    def __init__(self, owner: FakeDataLayer) -> None:
        self._owner = owner
        self.committed = False
        self.rolled_back = False

    def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        return self._owner.fetch(query, *args)

    def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        return self._owner.fetchrow(query, *args)

    def execute(self, query: str, *args: Any) -> str:
        return self._owner.execute(query, *args)

    def commit(self) -> None:
        self.committed = True

    def rollback(self) -> None:
        self.rolled_back = True


class FakeDataLayer:
    """Synchronous in-memory stand-in for BlockingDatabase."""

    database_name = "portal_test"

    def __init__(self) -> None:
        self.players: dict[int, dict[str, Any]] = {}
        self.accounts: dict[int, dict[str, Any]] = {}
        self.guilds: dict[int, int] = {}
        self.online: set[int] = set()
        self.storage: dict[tuple[int, int], int] = {}
        self.extensions: dict[str, list[dict[str, Any]]] = {"page": [], "widget": []}
        self.query_results: dict[str, list[dict[str, Any]]] = {}
        self.queries: list[tuple[str, tuple[Any, ...]]] = []
        self.transactions: list[FakeTransaction] = []
        self.catalog_queries = 0
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise DataAccessError("connection refused")

    # ── Seeding ──────────────────────────────────────────────────

    def add_account(self, id: int, name: str, **extra: Any) -> dict[str, Any]:
        row = {"id": id, "name": name, "email": f"{name.lower()}@example.com",
               "premium_ends_at": 0, "creation": 0, **extra}
        self.accounts[id] = row
        return row

    def add_player(self, id: int, name: str, account_id: int, **extra: Any) -> dict[str, Any]:
        row = {"id": id, "name": name, "account_id": account_id, "level": 8,
               "vocation": 1, "sex": 0, "experience": 4200, "town_id": 1,
               "balance": 0, "cap": 470, "lastlogin": 0, **extra}
        self.players[id] = row
        return row

    def enable_extension(self, kind: str, extension_id: str, enabled: bool = True) -> None:
        self.extensions[kind].append({"extension_id": extension_id, "enabled": enabled})

    # ── Ad-hoc SQL ───────────────────────────────────────────────

    def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        self._check()
        self.queries.append((query, args))
        return copy.deepcopy(self.query_results.get(query, []))

    def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        rows = self.fetch(query, *args)
        return rows[0] if rows else None

    def execute(self, query: str, *args: Any) -> str:
        self._check()
        self.queries.append((query, args))
        return "OK"

    def begin(self) -> FakeTransaction:
        self._check()
        tx = FakeTransaction(self)
        self.transactions.append(tx)
        return tx

    # ── Entities ─────────────────────────────────────────────────

    @staticmethod
    def _lookup(table: dict[int, dict[str, Any]], ident: int | str) -> dict[str, Any] | None:
        if isinstance(ident, int):
            row = table.get(ident)
        else:
            row = next((r for r in table.values() if r["name"].lower() == ident.lower()), None)
        return dict(row) if row is not None else None

    def fetch_player(self, ident: int | str) -> dict[str, Any] | None:
        self._check()
        return self._lookup(self.players, ident)

    def fetch_account(self, ident: int | str) -> dict[str, Any] | None:
        self._check()
        return self._lookup(self.accounts, ident)

    def fetch_account_players(self, account_id: int) -> list[dict[str, Any]]:
        self._check()
        rows = [dict(p) for p in self.players.values() if p["account_id"] == account_id]
        return sorted(rows, key=lambda r: r["name"])

    def fetch_guild_id(self, player_id: int) -> int | None:
        self._check()
        return self.guilds.get(player_id)

    def fetch_balance(self, player_id: int) -> int | None:
        self._check()
        row = self.players.get(player_id)
        return row["balance"] if row else None

    def update_balance(self, player_id: int, balance: int) -> None:
        self._check()
        self.players[player_id]["balance"] = balance

    def is_online(self, player_id: int) -> bool:
        self._check()
        return player_id in self.online

    def fetch_storage_value(self, player_id: int, key: int) -> int | None:
        self._check()
        return self.storage.get((player_id, key))

    def upsert_storage_value(self, player_id: int, key: int, value: int) -> None:
        self._check()
        self.storage[(player_id, key)] = value

    # ── Column catalog / custom fields ───────────────────────────

    def _table(self, table: str) -> dict[int, dict[str, Any]]:
        return {"players": self.players, "accounts": self.accounts}[table]

    def fetch_column_names(self, table: str) -> set[str]:
        self._check()
        self.catalog_queries += 1
        columns: set[str] = set()
        for row in self._table(table).values():
            columns.update(row)
        return columns

    def fetch_custom_field(self, table: str, column: str, row_id: int) -> Any:
        self._check()
        return self._table(table)[row_id].get(column)

    def update_custom_field(self, table: str, column: str, row_id: int, value: Any) -> None:
        self._check()
        self._table(table)[row_id][column] = value

    # ── Extensions ───────────────────────────────────────────────

    def fetch_enabled_extensions(self, prefix: str, kind: str) -> list[dict[str, Any]]:
        self._check()
        rows = [dict(r) for r in self.extensions[kind] if r["enabled"]]
        return sorted(rows, key=lambda r: r["extension_id"])


def write_script(root: Path, rel: str, source: str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(source, encoding="utf-8")
    return path


@pytest.fixture
def fake_data() -> FakeDataLayer:
    data = FakeDataLayer()
    data.add_account(1, "Admin", premium_ends_at=0, points=10)
    data.add_player(1, "Tester", 1, custom_title="Hero")
    data.add_player(2, "Second", 1, vocation=4, town_id=2)
    return data

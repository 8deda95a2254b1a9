"""Database layer — asyncpg connection pool plus a blocking facade.

Scripts run on worker threads and call the data layer synchronously.
``BlockingDatabase`` submits each query to the event loop that owns the
asyncpg pool and waits for the result, turning driver failures into
``DataAccessError``.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import os
import re
from typing import Any, Coroutine, Protocol

import asyncpg

from portal.errors import DataAccessError

log = logging.getLogger(__name__)

ENTITY_TABLES = frozenset({"players", "accounts"})
EXTENSION_KINDS = ("page", "widget")

_IDENT_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


def quote_ident(name: str) -> str:
    """Quote a column identifier that was already checked against the catalog."""
    return '"' + name.replace('"', '""') + '"'


def extension_table(prefix: str, kind: str) -> str:
    if kind not in EXTENSION_KINDS:
        raise ValueError(f"unknown extension kind: {kind!r}")
    if not _IDENT_RE.match(prefix):
        raise ValueError(f"invalid table prefix: {prefix!r}")
    return f"{prefix}_extension_{kind}s"


class Database:
    """Async PostgreSQL database wrapper."""

    def __init__(self, config: dict[str, Any]) -> None:
        self._config = config
        self._pool: asyncpg.Pool | None = None

    @property
    def pool(self) -> asyncpg.Pool:
        assert self._pool is not None, "Database not connected"
        return self._pool

    @property
    def name(self) -> str:
        return self._config["database"]

    async def connect(self) -> None:
        host = os.environ.get("DB_HOST", self._config["host"])
        dsn = (
            f"postgresql://{self._config['user']}:{self._config['password']}"
            f"@{host}:{self._config['port']}"
            f"/{self._config['database']}"
        )
        self._pool = await asyncpg.create_pool(
            dsn,
            min_size=self._config.get("min_connections", 2),
            max_size=self._config.get("max_connections", 10),
        )
        log.info("Database pool created: %s", self._config["database"])

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            log.info("Database pool closed")

    # ── Query helpers ───────────────────────────────────────────────

    async def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [dict(r) for r in rows]

    async def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
        return dict(row) if row is not None else None

    async def fetchval(self, query: str, *args: Any) -> Any:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args)

    async def begin(self) -> Transaction:
        """Acquire a dedicated connection and start a transaction on it."""
        conn = await self.pool.acquire()
        try:
            tr = conn.transaction()
            await tr.start()
        except BaseException:
            await self.pool.release(conn)
            raise
        return Transaction(self.pool, conn, tr)

    # ── Entities ────────────────────────────────────────────────────

    async def fetch_player(self, ident: int | str) -> dict[str, Any] | None:
        if isinstance(ident, int):
            return await self.fetchrow("SELECT * FROM players WHERE id = $1", ident)
        return await self.fetchrow(
            "SELECT * FROM players WHERE LOWER(name) = LOWER($1)", ident
        )

    async def fetch_account(self, ident: int | str) -> dict[str, Any] | None:
        if isinstance(ident, int):
            return await self.fetchrow("SELECT * FROM accounts WHERE id = $1", ident)
        return await self.fetchrow(
            "SELECT * FROM accounts WHERE LOWER(name) = LOWER($1)", ident
        )

    async def fetch_account_players(self, account_id: int) -> list[dict[str, Any]]:
        return await self.fetch(
            "SELECT * FROM players WHERE account_id = $1 ORDER BY name", account_id
        )

    async def fetch_guild_id(self, player_id: int) -> int | None:
        return await self.fetchval(
            "SELECT guild_id FROM guild_membership WHERE player_id = $1", player_id
        )

    async def fetch_balance(self, player_id: int) -> int | None:
        return await self.fetchval("SELECT balance FROM players WHERE id = $1", player_id)

    async def update_balance(self, player_id: int, balance: int) -> None:
        await self.execute("UPDATE players SET balance = $2 WHERE id = $1", player_id, balance)

    async def is_online(self, player_id: int) -> bool:
        return bool(await self.fetchval(
            "SELECT EXISTS(SELECT 1 FROM players_online WHERE player_id = $1)", player_id
        ))

    async def fetch_storage_value(self, player_id: int, key: int) -> int | None:
        return await self.fetchval(
            "SELECT value FROM player_storage WHERE player_id = $1 AND key = $2",
            player_id, key,
        )

    async def upsert_storage_value(self, player_id: int, key: int, value: int) -> None:
        await self.execute(
            "INSERT INTO player_storage (player_id, key, value) VALUES ($1, $2, $3) "
            "ON CONFLICT (player_id, key) DO UPDATE SET value = $3",
            player_id, key, value,
        )

    # ── Column catalog / custom fields ──────────────────────────────

    async def fetch_column_names(self, table: str) -> set[str]:
        """Live column list of ``table`` in the configured database."""
        rows = await self.fetch(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_catalog = $1 AND table_name = $2",
            self.name, table,
        )
        return {r["column_name"] for r in rows}

    async def fetch_custom_field(self, table: str, column: str, row_id: int) -> Any:
        _check_entity_table(table)
        return await self.fetchval(
            f"SELECT {quote_ident(column)} FROM {table} WHERE id = $1", row_id  # noqa: S608
        )

    async def update_custom_field(self, table: str, column: str, row_id: int,
                                  value: Any) -> None:
        _check_entity_table(table)
        await self.execute(
            f"UPDATE {table} SET {quote_ident(column)} = $2 WHERE id = $1",  # noqa: S608
            row_id, value,
        )

    # ── Extensions ──────────────────────────────────────────────────

    async def fetch_enabled_extensions(self, prefix: str, kind: str) -> list[dict[str, Any]]:
        table = extension_table(prefix, kind)
        return await self.fetch(
            f"SELECT extension_id, enabled FROM {table} "  # noqa: S608
            "WHERE enabled ORDER BY extension_id"
        )

    async def set_extension_enabled(self, prefix: str, kind: str, extension_id: str,
                                    enabled: bool) -> str:
        table = extension_table(prefix, kind)
        return await self.execute(
            f"INSERT INTO {table} (extension_id, enabled) VALUES ($1, $2) "  # noqa: S608
            "ON CONFLICT (extension_id) DO UPDATE SET enabled = $2",
            extension_id, enabled,
        )

    # ── Ensure tables (idempotent) ──────────────────────────────────

    async def ensure_extension_tables(self, prefix: str) -> None:
        """Create the per-kind extension tables if they don't exist."""
        async with self.pool.acquire() as conn:
            for kind in EXTENSION_KINDS:
                await conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {extension_table(prefix, kind)} (
                        extension_id  TEXT PRIMARY KEY,
                        enabled       BOOLEAN NOT NULL DEFAULT FALSE,
                        installed_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
                    )
                """)


def _check_entity_table(table: str) -> None:
    if table not in ENTITY_TABLES:
        raise ValueError(f"not an entity table: {table!r}")


class Transaction:
    """A transaction pinned to one pooled connection."""

    def __init__(self, pool: asyncpg.Pool, conn: asyncpg.Connection,
                 tr: Any) -> None:
        self._pool = pool
        self._conn = conn
        self._tr = tr

    async def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        return [dict(r) for r in await self._conn.fetch(query, *args)]

    async def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        row = await self._conn.fetchrow(query, *args)
        return dict(row) if row is not None else None

    async def execute(self, query: str, *args: Any) -> str:
        return await self._conn.execute(query, *args)

    async def commit(self) -> None:
        try:
            await self._tr.commit()
        finally:
            await self._pool.release(self._conn)

    async def rollback(self) -> None:
        try:
            await self._tr.rollback()
        finally:
            await self._pool.release(self._conn)


# ── Blocking facade ──────────────────────────────────────────────


class DataLayer(Protocol):
    """Synchronous data access used from script worker threads."""

    database_name: str

    def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]: ...
    def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None: ...
    def execute(self, query: str, *args: Any) -> str: ...
    def begin(self) -> Any: ...
    def fetch_player(self, ident: int | str) -> dict[str, Any] | None: ...
    def fetch_account(self, ident: int | str) -> dict[str, Any] | None: ...
    def fetch_account_players(self, account_id: int) -> list[dict[str, Any]]: ...
    def fetch_guild_id(self, player_id: int) -> int | None: ...
    def fetch_balance(self, player_id: int) -> int | None: ...
    def update_balance(self, player_id: int, balance: int) -> None: ...
    def is_online(self, player_id: int) -> bool: ...
    def fetch_storage_value(self, player_id: int, key: int) -> int | None: ...
    def upsert_storage_value(self, player_id: int, key: int, value: int) -> None: ...
    def fetch_column_names(self, table: str) -> set[str]: ...
    def fetch_custom_field(self, table: str, column: str, row_id: int) -> Any: ...
    def update_custom_field(self, table: str, column: str, row_id: int, value: Any) -> None: ...
    def fetch_enabled_extensions(self, prefix: str, kind: str) -> list[dict[str, Any]]: ...


_DRIVER_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    concurrent.futures.TimeoutError,
)


class BlockingDatabase:
    """Synchronous view of a Database, usable from any non-loop thread."""

    def __init__(self, db: Database, loop: asyncio.AbstractEventLoop,
                 timeout: float | None = 30.0) -> None:
        self._db = db
        self._loop = loop
        self._timeout = timeout

    @property
    def database_name(self) -> str:
        return self._db.name

    def _call(self, coro: Coroutine[Any, Any, Any]) -> Any:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            coro.close()
            raise RuntimeError("BlockingDatabase used from its own event loop thread")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(self._timeout)
        except _DRIVER_ERRORS as e:
            future.cancel()
            raise DataAccessError(f"database error: {e}") from e

    def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        return self._call(self._db.fetch(query, *args))

    def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        return self._call(self._db.fetchrow(query, *args))

    def execute(self, query: str, *args: Any) -> str:
        return self._call(self._db.execute(query, *args))

    def begin(self) -> BlockingTransaction:
        return BlockingTransaction(self, self._call(self._db.begin()))

    def fetch_player(self, ident: int | str) -> dict[str, Any] | None:
        return self._call(self._db.fetch_player(ident))

    def fetch_account(self, ident: int | str) -> dict[str, Any] | None:
        return self._call(self._db.fetch_account(ident))

    def fetch_account_players(self, account_id: int) -> list[dict[str, Any]]:
        return self._call(self._db.fetch_account_players(account_id))

    def fetch_guild_id(self, player_id: int) -> int | None:
        return self._call(self._db.fetch_guild_id(player_id))

    def fetch_balance(self, player_id: int) -> int | None:
        return self._call(self._db.fetch_balance(player_id))

    def update_balance(self, player_id: int, balance: int) -> None:
        self._call(self._db.update_balance(player_id, balance))

    def is_online(self, player_id: int) -> bool:
        return self._call(self._db.is_online(player_id))

    def fetch_storage_value(self, player_id: int, key: int) -> int | None:
        return self._call(self._db.fetch_storage_value(player_id, key))

    def upsert_storage_value(self, player_id: int, key: int, value: int) -> None:
        self._call(self._db.upsert_storage_value(player_id, key, value))

    def fetch_column_names(self, table: str) -> set[str]:
        return self._call(self._db.fetch_column_names(table))

    def fetch_custom_field(self, table: str, column: str, row_id: int) -> Any:
        return self._call(self._db.fetch_custom_field(table, column, row_id))

    def update_custom_field(self, table: str, column: str, row_id: int, value: Any) -> None:
        self._call(self._db.update_custom_field(table, column, row_id, value))

    def fetch_enabled_extensions(self, prefix: str, kind: str) -> list[dict[str, Any]]:
        return self._call(self._db.fetch_enabled_extensions(prefix, kind))


class BlockingTransaction:
    def __init__(self, owner: BlockingDatabase, tx: Transaction) -> None:
        self._owner = owner
        self._tx = tx

    def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        return self._owner._call(self._tx.fetch(query, *args))

    def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        return self._owner._call(self._tx.fetchrow(query, *args))

    def execute(self, query: str, *args: Any) -> str:
        return self._owner._call(self._tx.execute(query, *args))

    def commit(self) -> None:
        self._owner._call(self._tx.commit())

    def rollback(self) -> None:
        self._owner._call(self._tx.rollback())

"""Script runtime — owns registries, pool, bridge and dispatcher; boot sequence."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import yaml

from portal.bridge import HostObjectBridge
from portal.compiler import CompiledUnit, CompiledUnitRegistry, ProtoCompiler
from portal.db import BlockingDatabase, DataLayer, Database
from portal.dispatcher import Dispatcher, RequestContext, ScriptResult
from portal.extensions import ExtensionResolver, ResolveReport, WidgetList
from portal.lua_env import ApplicationEnv
from portal.pool import ScriptState, StatePool

log = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent


class ScriptRuntime:
    """Long-lived context shared by every request.

    Nothing here is a module global: tests build as many runtimes as they like.
    """

    def __init__(self, config: dict[str, Any], *, base_dir: str | Path | None = None,
                 data: DataLayer | None = None) -> None:
        self.config = config
        paths = config.get("paths", {})
        self.base_dir = Path(base_dir or paths.get("base_dir") or BASE_DIR)
        self.pages_dir = self.base_dir / paths.get("pages", "pages")
        self.widgets_dir = self.base_dir / paths.get("widgets", "widgets")

        self.db = Database(config["database"]) if "database" in config else None
        self.data: DataLayer | None = None

        self.compiler = ProtoCompiler()
        self.primary = CompiledUnitRegistry("primary")
        self.extensions = CompiledUnitRegistry("extensions")
        self.widgets = WidgetList()

        pool_cfg = config.get("pool", {})
        self.pool = StatePool(
            self.lookup, self._install,
            max_idle=pool_cfg.get("max_idle"),
            idle_timeout=pool_cfg.get("idle_timeout"),
        )

        lua_cfg = config.get("lua", {})
        self.timeout: float | None = lua_cfg.get("timeout")
        self._executor = ThreadPoolExecutor(
            max_workers=lua_cfg.get("workers", 8), thread_name_prefix="portal-script",
        )
        self.dispatcher = Dispatcher(self.pool, self._executor)

        self.bridge: HostObjectBridge | None = None
        self.env: ApplicationEnv | None = None
        self.resolver: ExtensionResolver | None = None
        self._eviction_task: asyncio.Task | None = None
        self._running = False

        if data is not None:
            self.attach_data(data)

    @classmethod
    def from_config(cls, config_path: str | Path, **kwargs: Any) -> ScriptRuntime:
        with open(config_path, encoding="utf-8") as f:
            config: dict[str, Any] = yaml.safe_load(f) or {}
        return cls(config, **kwargs)

    def attach_data(self, data: DataLayer) -> None:
        """Wire the components that need the (blocking) data layer."""
        self.data = data
        server_cfg = self.config.get("server", {})
        lua_cfg = self.config.get("lua", {})
        ext_cfg = self.config.get("extensions", {})
        self.bridge = HostObjectBridge(
            data,
            vocations=server_cfg.get("vocations", []),
            towns=server_cfg.get("towns", []),
        )
        self.env = ApplicationEnv(
            data, self.bridge,
            app_config=self.config.get("app", {}),
            lib_dirs=[self.base_dir / d for d in lua_cfg.get("lib_dirs", [])],
        )
        self.resolver = ExtensionResolver(
            self.compiler, self.extensions, self.pool, data, self.widgets,
            base_dir=self.base_dir,
            table_prefix=ext_cfg.get("table_prefix", "portal"),
            prewarm_widgets=ext_cfg.get("prewarm_widgets", True),
        )

    def _install(self, state: ScriptState) -> None:
        if self.env is not None:
            self.env(state)

    # ── Registries ───────────────────────────────────────────────

    def lookup(self, path: str) -> CompiledUnit | None:
        """Extension registry first, then the primary one."""
        return self.extensions.get(path) or self.primary.get(path)

    def compile_primary(self) -> int:
        """Compile pages/ and widgets/; on failure the registry is untouched."""
        units: dict[str, CompiledUnit] = {}
        for root in (self.pages_dir, self.widgets_dir):
            units.update(self.compiler.compile_all(root))
        self.primary.replace(units)
        self.pool.invalidate()
        log.info("Compiled %d primary scripts", len(units))
        return len(units)

    # ── Boot sequence ────────────────────────────────────────────

    async def boot(self) -> None:
        log.info("=== Portal script engine booting: %s ===", self.config.get("name", "portal"))

        # 1. Connect to DB (unless a data layer was injected)
        if self.data is None:
            if self.db is None:
                raise RuntimeError("No database configured")
            await self.db.connect()
            prefix = self.config.get("extensions", {}).get("table_prefix", "portal")
            await self.db.ensure_extension_tables(prefix)
            self.attach_data(BlockingDatabase(self.db, asyncio.get_running_loop()))

        # 2. Compile primary trees (fatal on failure)
        await asyncio.to_thread(self.compile_primary)

        # 3. Widget list
        self.widgets.load(self.widgets_dir)

        # 4. Extensions (page failures are fatal here)
        await self.reload_extensions()

        # 5. Idle eviction
        interval = self.config.get("pool", {}).get("eviction_interval", 60)
        if self.pool.idle_timeout is not None and interval:
            self._eviction_task = asyncio.create_task(self._eviction_loop(interval))

        self._running = True
        log.info("=== Boot complete: %d primary, %d extension units, %d widgets ===",
                 len(self.primary), len(self.extensions), len(self.widgets))

    async def reload_extensions(self, kind: str | None = None) -> list[ResolveReport]:
        assert self.resolver is not None, "Data layer not attached"
        if kind is None:
            return await asyncio.to_thread(self.resolver.resolve_all)
        return [await asyncio.to_thread(self.resolver.resolve, kind)]

    async def _eviction_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            evicted = self.pool.evict_idle()
            if evicted:
                log.debug("Evicted %d idle interpreter states", evicted)

    # ── Requests ─────────────────────────────────────────────────

    async def run(self, path: str, context: RequestContext,
                  entry: str | None = None) -> ScriptResult:
        return await self.dispatcher.run_async(path, context, entry=entry, timeout=self.timeout)

    # ── Shutdown ─────────────────────────────────────────────────

    async def shutdown(self) -> None:
        log.info("Shutting down...")
        self._running = False
        if self._eviction_task:
            self._eviction_task.cancel()
            try:
                await self._eviction_task
            except asyncio.CancelledError:
                pass
            self._eviction_task = None
        self.pool.invalidate()
        self._executor.shutdown(wait=False)
        if self.db is not None:
            await self.db.close()
        log.info("Shutdown complete")

    async def serve(self) -> None:
        """Boot, serve the API until stopped, then shut down."""
        from portal.api import start_api, stop_api

        await self.boot()
        net_cfg = self.config.get("network", {})
        await start_api(self, host=net_cfg.get("api_host", "0.0.0.0"),
                        port=net_cfg.get("api_port", 8080))
        try:
            while self._running:
                await asyncio.sleep(0.5)
        except asyncio.CancelledError:
            pass
        finally:
            await stop_api()
            await self.shutdown()

    def stop(self) -> None:
        self._running = False


# ── Main ─────────────────────────────────────────────────────────

def main() -> None:
    config_path = os.environ.get("PORTAL_CONFIG", str(BASE_DIR / "config" / "portal.yaml"))

    logging.basicConfig(
        level=logging.DEBUG if os.environ.get("PORTAL_DEBUG") else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    runtime = ScriptRuntime.from_config(config_path)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, runtime.stop)

    try:
        loop.run_until_complete(runtime.serve())
    finally:
        loop.close()


if __name__ == "__main__":
    main()

"""Dispatcher — run a script's entry point on a pooled interpreter.

The ``http`` context handed to the entry function buffers the response
(render/redirect/write); the dispatcher returns it as a ScriptResult once the
script has finished. The interpreter always goes back to the pool, including
when the script fails.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from lupa import LuaError, LuaRuntime, lua_type

from portal.compiler import normalize_path
from portal.errors import (
    ArgumentTypeError,
    BindingError,
    EntryPointError,
    ScriptExecutionError,
    ScriptTimeoutError,
)
from portal.lua_env import lua_to_python, to_lua

if TYPE_CHECKING:
    from portal.pool import ScriptState, StatePool

log = logging.getLogger(__name__)


@dataclass(slots=True)
class ScriptResult:
    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""
    template: str | None = None
    data: Any = None
    redirect: str | None = None
    json: Any = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "headers": dict(self.headers),
            "body": self.body,
            "template": self.template,
            "data": self.data,
            "redirect": self.redirect,
            "json": self.json,
        }


# ── RequestContext: the `http` object passed to entry functions ──


class RequestContext:
    """Request data in, buffered response out.

    Query and form values are exposed to Lua as tables; response calls only
    record what the external renderer should do.
    """

    def __init__(self, method: str = "GET", path: str = "/",
                 get_values: dict[str, Any] | None = None,
                 post_values: dict[str, Any] | None = None,
                 headers: dict[str, str] | None = None) -> None:
        self.method = method.upper()
        self.path = path
        self._get = dict(get_values or {})
        self._post = dict(post_values or {})
        self._headers = {k.lower(): v for k, v in (headers or {}).items()}
        self._lua: LuaRuntime | None = None
        self.result = ScriptResult()

    def bind(self, lua: LuaRuntime | None) -> None:
        self._lua = lua

    # ── Request ──────────────────────────────────────────────────

    @property
    def get_values(self) -> Any:
        return to_lua(self._lua, self._get)

    @property
    def post_values(self) -> Any:
        return to_lua(self._lua, self._post)

    def header(self, name: Any = None) -> str | None:
        if not isinstance(name, str):
            raise ArgumentTypeError("Invalid header name type. Expected string")
        return self._headers.get(name.lower())

    # ── Response ─────────────────────────────────────────────────

    def render(self, template: Any = None, data: Any = None) -> None:
        if not isinstance(template, str):
            raise ArgumentTypeError("Invalid template name type. Expected string")
        self.result.template = template
        self.result.data = lua_to_python(data)

    def redirect(self, url: Any = None) -> None:
        if not isinstance(url, str):
            raise ArgumentTypeError("Invalid redirect location type. Expected string")
        self.result.redirect = url
        self.result.status = 302

    def write(self, text: Any = None) -> None:
        if text is None:
            raise ArgumentTypeError("Invalid body type. Expected string or number")
        self.result.body += str(text)

    def json(self, data: Any = None) -> None:
        self.result.json = lua_to_python(data)
        self.result.headers["content-type"] = "application/json"

    def set_status(self, code: Any = None) -> None:
        if not isinstance(code, (int, float)) or isinstance(code, bool):
            raise ArgumentTypeError("Invalid status code type. Expected number")
        self.result.status = int(code)

    def set_header(self, name: Any = None, value: Any = None) -> None:
        if not isinstance(name, str) or value is None:
            raise ArgumentTypeError("Invalid header. Expected name and value")
        self.result.headers[str(name).lower()] = str(value)


# ── Dispatcher ───────────────────────────────────────────────────


class _Ticket:
    __slots__ = ("abandoned",)

    def __init__(self) -> None:
        self.abandoned = False


class Dispatcher:
    """Checkout → call entry(context) → checkin."""

    def __init__(self, pool: StatePool, executor: Executor | None = None) -> None:
        self.pool = pool
        self._executor = executor

    def run(self, path: str, context: RequestContext,
            entry: str | None = None) -> ScriptResult:
        return self._run(path, context, entry, None)

    async def run_async(self, path: str, context: RequestContext, *,
                        entry: str | None = None,
                        timeout: float | None = None) -> ScriptResult:
        """Run on a worker thread; on timeout the interpreter is discarded."""
        loop = asyncio.get_running_loop()
        ticket = _Ticket()
        fut = loop.run_in_executor(self._executor, self._run, path, context, entry, ticket)
        try:
            return await asyncio.wait_for(asyncio.shield(fut), timeout)
        except asyncio.TimeoutError:
            ticket.abandoned = True
            fut.add_done_callback(_drain)
            log.warning("Script %s timed out after %ss", path, timeout)
            raise ScriptTimeoutError(normalize_path(path), timeout or 0.0) from None

    def _run(self, path: str, context: RequestContext, entry: str | None,
             ticket: _Ticket | None) -> ScriptResult:
        path = normalize_path(path)
        state = self.pool.checkout(path)
        try:
            return self._invoke(state, path, context, entry)
        finally:
            if ticket is not None and ticket.abandoned:
                self.pool.discard(state)
            else:
                self.pool.checkin(state, path)

    def _invoke(self, state: ScriptState, path: str, context: RequestContext,
                entry: str | None) -> ScriptResult:
        name = entry or state.unit.entry
        fn = state.entry(name)
        if fn is None or lua_type(fn) != "function":
            raise EntryPointError(path, name)
        context.bind(state.lua)
        try:
            fn(context)
        except (LuaError, BindingError, TypeError, AttributeError) as e:
            log.error("Script %s failed: %s", path, e)
            raise ScriptExecutionError(path, str(e)) from e
        finally:
            context.bind(None)
        return context.result


def _drain(fut: Future | asyncio.Future) -> None:
    if not fut.cancelled():
        exc = fut.exception()
        if exc is not None:
            log.debug("Abandoned script finished with error: %s", exc)

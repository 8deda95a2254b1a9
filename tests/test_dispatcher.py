"""Dispatcher tests — entry invocation, http context, errors, timeouts."""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from portal.compiler import CompiledUnit, ProtoCompiler, entry_for, normalize_path
from portal.dispatcher import Dispatcher, RequestContext
from portal.errors import (
    ArgumentTypeError,
    EntryPointError,
    ScriptExecutionError,
    ScriptTimeoutError,
    UnitNotFoundError,
)
from portal.lua_env import ApplicationEnv
from portal.pool import StatePool

_compiler = ProtoCompiler()


def _make_dispatcher(scripts, installer=None, executor=None):
    units = {}
    for path, source in scripts.items():
        path = normalize_path(path)
        units[path] = CompiledUnit(path=path, source_path=path,
                                   bytecode=_compiler.compile_source(source, path),
                                   entry=entry_for(path))
    pool = StatePool(units.get, installer)
    return Dispatcher(pool, executor), pool


class TestRequestContext:
    def test_values_without_runtime(self):
        ctx = RequestContext("get", "/x", get_values={"page": "2"}, headers={"X-Test": "1"})
        assert ctx.method == "GET"
        assert ctx.get_values == {"page": "2"}
        assert ctx.header("x-test") == "1"
        assert ctx.header("missing") is None

    def test_redirect(self):
        ctx = RequestContext()
        ctx.redirect("/subtopic/login")
        assert ctx.result.status == 302
        assert ctx.result.redirect == "/subtopic/login"

    def test_bad_argument_types(self):
        ctx = RequestContext()
        with pytest.raises(ArgumentTypeError):
            ctx.write()
        with pytest.raises(ArgumentTypeError):
            ctx.render()
        with pytest.raises(ArgumentTypeError):
            ctx.header()
        with pytest.raises(ArgumentTypeError):
            ctx.set_header("x-test")
        with pytest.raises(ArgumentTypeError):
            ctx.render(5)
        with pytest.raises(ArgumentTypeError):
            ctx.redirect(None)
        with pytest.raises(ArgumentTypeError):
            ctx.set_status("200")


class TestRun:
    def test_render_from_script(self):
        dispatcher, _ = _make_dispatcher({
            "pages/index/get.lua": """
                function get(http)
                    http:render("home.html", {page = http.get_values.page, items = {1, 2}})
                end
            """,
        })
        result = dispatcher.run("pages/index/get.lua", RequestContext(get_values={"page": "3"}))
        assert result.template == "home.html"
        assert result.data == {"page": "3", "items": [1, 2]}
        assert result.status == 200

    def test_post_values_and_write(self):
        dispatcher, _ = _make_dispatcher({
            "pages/echo/post.lua": """
                function post(http)
                    http:set_header("X-Echo", "yes")
                    http:write("hello ")
                    http:write(http.post_values.name)
                end
            """,
        })
        result = dispatcher.run("Pages/Echo/POST.lua",
                                RequestContext("POST", post_values={"name": "bob"}))
        assert result.body == "hello bob"
        assert result.headers["x-echo"] == "yes"

    def test_json_result(self):
        dispatcher, _ = _make_dispatcher({
            "pages/api/get.lua": "function get(http) http:json({ok = true, n = 3}) end",
        })
        result = dispatcher.run("pages/api/get.lua", RequestContext())
        assert result.json == {"ok": True, "n": 3}
        assert result.as_dict()["headers"]["content-type"] == "application/json"

    def test_state_returned_to_pool(self):
        dispatcher, pool = _make_dispatcher({
            "pages/index/get.lua": "n = 0\nfunction get(http) n = n + 1; http:write(n) end",
        })
        dispatcher.run("pages/index/get.lua", RequestContext())
        result = dispatcher.run("pages/index/get.lua", RequestContext())
        assert result.body == "2"
        assert pool.idle_count("pages/index/get.lua") == 1
        assert pool.cold_starts == 1

    def test_explicit_entry(self):
        dispatcher, _ = _make_dispatcher({
            "widgets/online.lua": "function widget(http) http:write('w') end\n"
                                  "function alt(http) http:write('alt') end",
        })
        assert dispatcher.run("widgets/online.lua", RequestContext()).body == "w"
        assert dispatcher.run("widgets/online.lua", RequestContext(), entry="alt").body == "alt"

    def test_unknown_path(self):
        dispatcher, _ = _make_dispatcher({})
        with pytest.raises(UnitNotFoundError):
            dispatcher.run("pages/none/get.lua", RequestContext())

    def test_missing_entry(self):
        dispatcher, pool = _make_dispatcher({"pages/x/get.lua": "function post() end"})
        with pytest.raises(EntryPointError):
            dispatcher.run("pages/x/get.lua", RequestContext())
        assert pool.idle_count() == 1

    def test_script_error_still_returns_state(self):
        dispatcher, pool = _make_dispatcher({
            "pages/x/get.lua": "function get(http) error('kaboom') end",
        })
        with pytest.raises(ScriptExecutionError, match="kaboom"):
            dispatcher.run("pages/x/get.lua", RequestContext())
        assert pool.idle_count("pages/x/get.lua") == 1

    def test_binding_error_becomes_execution_error(self):
        dispatcher, _ = _make_dispatcher({
            "pages/x/get.lua": "function get(http) http:render(42) end",
        })
        with pytest.raises(ScriptExecutionError):
            dispatcher.run("pages/x/get.lua", RequestContext())

    def test_missing_argument_becomes_execution_error(self):
        dispatcher, pool = _make_dispatcher({
            "pages/x/get.lua": "function get(http) http:write() end",
        })
        with pytest.raises(ScriptExecutionError):
            dispatcher.run("pages/x/get.lua", RequestContext())
        assert pool.idle_count("pages/x/get.lua") == 1

    def test_stray_python_error_becomes_execution_error(self):
        dispatcher, _ = _make_dispatcher({
            "pages/x/get.lua": "function get(http) http.no_such_method(http) end",
        })
        with pytest.raises(ScriptExecutionError):
            dispatcher.run("pages/x/get.lua", RequestContext())

    def test_transaction_left_open_is_rolled_back(self, fake_data):
        dispatcher, pool = _make_dispatcher(
            {"pages/x/get.lua": "function get(http) db:begin() error('mid-tx') end"},
            installer=ApplicationEnv(fake_data),
        )
        with pytest.raises(ScriptExecutionError):
            dispatcher.run("pages/x/get.lua", RequestContext())
        state = pool.checkout("pages/x/get.lua")
        assert not state.in_transaction
        assert fake_data.transactions[0].rolled_back


class TestRunAsync:
    @pytest.mark.asyncio
    async def test_run_async(self):
        with ThreadPoolExecutor(max_workers=2) as ex:
            dispatcher, _ = _make_dispatcher(
                {"pages/x/get.lua": "function get(http) http:write('ok') end"}, executor=ex,
            )
            result = await dispatcher.run_async("pages/x/get.lua", RequestContext(), timeout=5)
        assert result.body == "ok"

    @pytest.mark.asyncio
    async def test_timeout_discards_state(self):
        with ThreadPoolExecutor(max_workers=2) as ex:
            dispatcher, pool = _make_dispatcher({
                "pages/slow/get.lua": """
                    function get(http)
                        local t = os.clock()
                        while os.clock() - t < 0.5 do end
                        http:write('late')
                    end
                """,
            }, executor=ex)
            with pytest.raises(ScriptTimeoutError):
                await dispatcher.run_async("pages/slow/get.lua", RequestContext(), timeout=0.05)
            await asyncio.sleep(0.8)
        assert pool.idle_count() == 0
        assert pool.evictions == 1

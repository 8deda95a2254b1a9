"""Compiler + registry tests — bytecode units, virtual paths, atomic swaps."""

import pytest

from conftest import write_script
from portal.compiler import (
    CompiledUnit,
    CompiledUnitRegistry,
    ProtoCompiler,
    entry_for,
    normalize_path,
)
from portal.errors import CompileError


def _make_unit(path, origin="primary"):
    return CompiledUnit(path=normalize_path(path), source_path=path, bytecode=b"",
                        entry=entry_for(path), origin=origin)


class TestPaths:
    def test_normalize(self):
        assert normalize_path("Pages/Index/GET.lua") == "pages/index/get.lua"
        assert normalize_path("/pages/x.lua") == "pages/x.lua"
        assert normalize_path("./widgets/a.lua") == "widgets/a.lua"
        assert normalize_path("pages\\a\\get.lua") == "pages/a/get.lua"

    def test_entry_for_pages_uses_stem(self):
        assert entry_for("pages/index/get.lua") == "get"
        assert entry_for("pages/register/post.lua") == "post"

    def test_entry_for_widgets(self):
        assert entry_for("widgets/online.lua") == "widget"
        assert entry_for("Widgets/Sub/clock.lua") == "widget"


class TestProtoCompiler:
    def test_compile_source_returns_bytecode(self):
        bc = ProtoCompiler().compile_source("function get() return 1 end", "t.lua")
        assert isinstance(bc, bytes)
        # Lua binary chunks start with ESC 'Lua'
        assert bc.startswith(b"\x1bLua")

    def test_syntax_error_raises(self):
        with pytest.raises(CompileError) as exc:
            ProtoCompiler().compile_source("function get( end", "broken.lua")
        assert exc.value.path == "broken.lua"
        assert "broken.lua" in exc.value.cause

    def test_compile_one_virtual_path(self, tmp_path):
        src = write_script(tmp_path, "x/get.lua", "function get() end")
        unit = ProtoCompiler().compile_one(src, "Pages/X/Get.lua", origin="7")
        assert unit.path == "pages/x/get.lua"
        assert unit.entry == "get"
        assert unit.origin == "7"
        assert unit.kind_root == "pages"
        assert unit.source_path == str(src)

    def test_compile_one_missing_file(self, tmp_path):
        with pytest.raises(CompileError):
            ProtoCompiler().compile_one(tmp_path / "nope.lua", "pages/nope.lua")

    def test_compile_all_keys_by_root_name(self, tmp_path):
        pages = tmp_path / "pages"
        write_script(pages, "index/get.lua", "function get() end")
        write_script(pages, "Register/post.lua", "function post() end")
        write_script(pages, "notes.txt", "ignored")
        units = ProtoCompiler().compile_all(pages)
        assert sorted(units) == ["pages/index/get.lua", "pages/register/post.lua"]
        assert all(u.origin == "primary" for u in units.values())

    def test_compile_tree_all_or_nothing(self, tmp_path):
        pages = tmp_path / "pages"
        write_script(pages, "a/get.lua", "function get() end")
        write_script(pages, "b/get.lua", "function get( end")
        with pytest.raises(CompileError):
            ProtoCompiler().compile_tree(pages, "pages")

    def test_missing_directory(self, tmp_path):
        with pytest.raises(CompileError, match="directory not found"):
            ProtoCompiler().compile_all(tmp_path / "pages")


class TestRegistry:
    def test_lookup_is_case_insensitive(self):
        reg = CompiledUnitRegistry("primary")
        reg.replace({"pages/Index/get.lua": _make_unit("pages/index/get.lua")})
        assert reg.get("PAGES/INDEX/GET.LUA") is reg.get("pages/index/get.lua")
        assert reg.exists("Pages/Index/Get.lua")
        assert not reg.exists("pages/other/get.lua")
        assert reg.get("pages/other/get.lua") is None

    def test_replace_swaps_whole_map(self):
        reg = CompiledUnitRegistry("primary")
        reg.replace({"pages/a.lua": _make_unit("pages/a.lua")})
        old = reg.snapshot()
        reg.replace({"pages/b.lua": _make_unit("pages/b.lua")})
        assert reg.paths() == ["pages/b.lua"]
        # Previously handed out snapshots stay intact
        assert list(old) == ["pages/a.lua"]

    def test_merge_incoming_wins(self):
        reg = CompiledUnitRegistry("ext")
        first = _make_unit("pages/a.lua", origin="1")
        second = _make_unit("pages/a.lua", origin="2")
        reg.merge({"pages/a.lua": first})
        reg.merge({"pages/a.lua": second, "pages/b.lua": _make_unit("pages/b.lua")})
        assert reg.get("pages/a.lua") is second
        assert len(reg) == 2

    def test_swap_prefix_only_touches_prefix(self):
        reg = CompiledUnitRegistry("ext")
        reg.merge({
            "pages/a.lua": _make_unit("pages/a.lua"),
            "widgets/w.lua": _make_unit("widgets/w.lua"),
        })
        reg.swap_prefix("pages", {"pages/c.lua": _make_unit("pages/c.lua")})
        assert reg.paths() == ["pages/c.lua", "widgets/w.lua"]

    def test_drop_prefix(self):
        reg = CompiledUnitRegistry("ext")
        reg.merge({"widgets/w.lua": _make_unit("widgets/w.lua")})
        reg.drop_prefix("widgets")
        assert len(reg) == 0

    def test_snapshot_is_read_only(self):
        reg = CompiledUnitRegistry("primary")
        with pytest.raises(TypeError):
            reg.snapshot()["x"] = _make_unit("x")

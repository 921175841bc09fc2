"""Tests for ServerManager: connection, catalog publishing, retry and shutdown."""

from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeClient, desc, tool
from mcp_chat.errors import ConnectionClosedError, NotInitializedError
from mcp_chat.servers import ServerState, detect_server_kind, normalize_command


class TestNormalizeCommand:
    def test_npx_on_windows(self):
        assert normalize_command("npx", ["-y", "pkg"], "win32") == ("npx.cmd", ["-y", "pkg"])

    def test_python3_on_windows(self):
        assert normalize_command("python3", ["srv.py"], "win32")[0] == "python"

    def test_python_on_unix(self):
        assert normalize_command("python", ["srv.py"], "linux")[0] == "python3"
        assert normalize_command("python", ["srv.py"], "darwin")[0] == "python3"

    def test_other_commands_untouched(self):
        assert normalize_command("npx", ["pkg"], "linux")[0] == "npx"
        assert normalize_command("/usr/bin/python3.12", ["srv.py"], "win32")[0] == "/usr/bin/python3.12"

    def test_args_are_copied(self):
        args = ["a"]
        _, out = normalize_command("node", args, "linux")
        assert out == args and out is not args

    def test_npx_inside_args_keeps_command_on_windows(self):
        assert normalize_command("node", ["node_modules/npx-cli.js"], "win32")[0] == "node"
        assert detect_server_kind("npx", ["-y", "pkg"]).is_npx
        assert not detect_server_kind("node", ["npx-cli.js"]).is_npx

    def test_detect_uvx(self):
        assert detect_server_kind("uvx", ["mcp-server-fetch"]).is_uvx
        assert not detect_server_kind("node", ["srv.js"]).is_uvx


class TestConnectAll:
    @pytest.mark.asyncio
    async def test_catalog_is_union_of_ready_servers(self, make_manager):
        clients = {
            "files": FakeClient([tool("read", "Read a file"), tool("write")]),
            "web": FakeClient([tool("fetch")]),
            "broken": FakeClient([tool("nope")], connect_error=OSError("spawn failed")),
        }
        mgr = make_manager(clients)

        assert await mgr.connect_all([desc("files"), desc("web"), desc("broken")]) == 2

        assert [t.name for t in mgr.tools] == ["files_read", "files_write", "web_fetch"]
        for t in mgr.tools:
            entry = mgr.namespace.resolve(t.name)
            assert (entry.server_id, entry.local_name) == (t.server_id, t.local_name)
        assert mgr.tools[0].description == "[files] Read a file"
        assert mgr.server_ids == ["files", "web"]
        assert mgr.states["broken"] is ServerState.DISCONNECTED
        assert mgr.states["files"] is ServerState.READY

    @pytest.mark.asyncio
    async def test_identical_local_names_stay_distinct(self, make_manager):
        mgr = make_manager({"a": FakeClient([tool("search")]), "b": FakeClient([tool("search")])})
        await mgr.connect_all({"a": desc("a"), "b": desc("b")})

        assert sorted(t.name for t in mgr.tools) == ["a_search", "b_search"]
        assert mgr.namespace.resolve("a_search").server_id == "a"
        assert mgr.namespace.resolve("b_search").server_id == "b"

    @pytest.mark.asyncio
    async def test_duplicate_local_name_is_listed_once(self, make_manager):
        mgr = make_manager({"a": FakeClient([tool("search", "first"), tool("search", "second"), tool("read")])})
        await mgr.connect_all([desc("a")])

        assert [t.name for t in mgr.tools] == ["a_search", "a_read"]
        assert mgr.tools[0].description == "[a] first"
        assert len(mgr.namespace) == 2

    @pytest.mark.asyncio
    async def test_spawn_failure_is_isolated(self, make_manager):
        clients = {
            "good": FakeClient([tool("echo")]),
            "bad": FakeClient(connect_error=FileNotFoundError("no such binary")),
        }
        mgr = make_manager(clients)

        assert await mgr.connect_all([desc("good"), desc("bad")]) == 1
        assert mgr.server_ids == ["good"]
        assert [t.name for t in mgr.tools] == ["good_echo"]
        assert clients["bad"].close_calls == 1

    @pytest.mark.asyncio
    async def test_factory_error_is_isolated(self, make_manager):
        mgr = make_manager({"good": FakeClient([tool("echo")])})
        assert await mgr.connect_all([desc("missing"), desc("good")]) == 1
        assert mgr.states["missing"] is ServerState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_retry_bound_excludes_server_after_five_attempts(self, make_manager):
        stuck = FakeClient([tool("x")], list_errors=[NotInitializedError("not ready")] * 10)
        healthy = FakeClient([tool("y")])
        mgr = make_manager({"stuck": stuck, "healthy": healthy})

        assert await mgr.connect_all([desc("stuck"), desc("healthy")]) == 1
        assert stuck.list_calls == 5
        assert stuck.close_calls == 1
        assert [t.name for t in mgr.tools] == ["healthy_y"]
        assert mgr.get_connection("stuck") is None
        assert "stuck_x" not in mgr.namespace

    @pytest.mark.asyncio
    async def test_transient_errors_then_success(self, make_manager):
        c = FakeClient([tool("x")], list_errors=[NotInitializedError("not ready"), RuntimeError("flaky")])
        mgr = make_manager({"s": c})
        assert await mgr.connect_all([desc("s")]) == 1
        assert c.list_calls == 3
        assert mgr.states["s"] is ServerState.READY

    @pytest.mark.asyncio
    async def test_backoff_doubles_from_base(self, make_manager):
        c = FakeClient([tool("x")], list_errors=[NotInitializedError("nope")] * 5)
        mgr = make_manager({"s": c}, retry_base_delay=1.0)
        with patch("mcp_chat.servers.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await mgr.connect_all([desc("s")])
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_uvx_server_gets_warmup(self, make_manager):
        mgr = make_manager({"fetch": FakeClient([tool("get")])}, warmup_delay=2.0)
        with patch("mcp_chat.servers.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await mgr.connect_all([desc("fetch", command="uvx", args=["mcp-server-fetch"])])
        sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_env_overrides_win(self, make_manager, monkeypatch):
        monkeypatch.setenv("SHARED_KEY", "ambient")
        monkeypatch.setenv("AMBIENT_ONLY", "1")
        mgr = make_manager({"s": FakeClient([tool("x")])}, platform="linux")
        await mgr.connect_all([desc("s", command="python", args=["srv.py"], env={"SHARED_KEY": "server"})])

        spawned = mgr.spawned["s"]
        assert spawned["command"] == "python3"
        assert spawned["env"]["SHARED_KEY"] == "server"
        assert spawned["env"]["AMBIENT_ONLY"] == "1"

    @pytest.mark.asyncio
    async def test_zero_servers_is_not_fatal(self, make_manager):
        mgr = make_manager({})
        assert await mgr.connect_all([]) == 0
        assert mgr.tools == []


class TestShutdown:
    @pytest.mark.asyncio
    async def test_close_all_twice(self, make_manager):
        clients = {"a": FakeClient([tool("x")]), "b": FakeClient([tool("y")])}
        mgr = make_manager(clients)
        await mgr.connect_all([desc("a"), desc("b")])

        await mgr.close_all()
        await mgr.close_all()

        assert mgr.connections == {} and mgr.tools == [] and len(mgr.namespace) == 0
        assert clients["a"].close_calls == 1
        assert mgr.states["a"] is ServerState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_close_errors_do_not_stop_others(self, make_manager):
        clients = {
            "epipe": FakeClient([tool("x")], close_error=BrokenPipeError()),
            "boom": FakeClient([tool("y")], close_error=RuntimeError("boom")),
            "ok": FakeClient([tool("z")]),
        }
        mgr = make_manager(clients)
        await mgr.connect_all([desc("epipe"), desc("boom"), desc("ok")])

        await mgr.close_all()

        assert all(c.close_calls == 1 for c in clients.values())
        assert mgr.connections == {}

    @pytest.mark.asyncio
    async def test_disconnect_removes_one_server(self, make_manager):
        clients = {"a": FakeClient([tool("x"), tool("y")]), "b": FakeClient([tool("x")])}
        mgr = make_manager(clients)
        await mgr.connect_all([desc("a"), desc("b")])

        await mgr.disconnect("a")

        assert [t.name for t in mgr.tools] == ["b_x"]
        assert mgr.namespace.identifiers() == ["b_x"]
        assert mgr.get_connection("a") is None
        assert clients["a"].close_calls == 1
        assert mgr.states["a"] is ServerState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_tolerates_dead_pipe(self, make_manager):
        mgr = make_manager({"a": FakeClient([tool("x")], close_error=ConnectionClosedError("gone"))})
        await mgr.connect_all([desc("a")])
        await mgr.disconnect("a")
        assert mgr.tools == []

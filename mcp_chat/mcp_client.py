# mcp_chat/mcp_client.py
import asyncio
import json
import subprocess
import sys
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence, Type

import structlog

from . import __version__
from .errors import ConnectionClosedError, JSONRPCError, NotInitializedError

log = structlog.get_logger(__name__)

PROTOCOL_VERSION = "2024-11-05"

# JSON-RPC / MCP error codes
METHOD_NOT_FOUND = -32601
CONNECTION_CLOSED = -32000

# Servers built on the reference SDKs answer a too-early request with this
# phrase instead of a dedicated code; classify_error is the only place it is read.
NOT_INITIALIZED_HINT = "before initialization was complete"

_STREAM_LIMIT = 16 * 1024 * 1024


def classify_error(code: Optional[int], message: str) -> Type[JSONRPCError]:
    text = (message or "").lower()
    if NOT_INITIALIZED_HINT in text:
        return NotInitializedError
    if code == CONNECTION_CLOSED or "connection closed" in text:
        return ConnectionClosedError
    return JSONRPCError


def is_disconnect(exc: BaseException) -> bool:
    return isinstance(exc, (ConnectionClosedError, BrokenPipeError, ConnectionResetError))


class MCPClient:
    """Line-delimited JSON-RPC client talking to one tool server over stdio."""

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: Optional[Mapping[str, str]] = None,
        name: str = "mcp-chat",
        start_timeout: float = 30.0,
        init_timeout: float = 30.0,
        call_timeout: float = 45.0,
        close_grace: float = 2.0,
    ):
        self.command = command
        self.args = list(args)
        self.env = dict(env) if env is not None else None
        self.name = name
        self.proc: Optional[asyncio.subprocess.Process] = None
        self.pending: Dict[str, asyncio.Future] = {}
        self.reader_task: Optional[asyncio.Task] = None
        self.server_info: Dict[str, Any] = {}

        self.start_timeout = start_timeout
        self.init_timeout = init_timeout
        self.call_timeout = call_timeout
        self.close_grace = close_grace
        self._closed = False

    @property
    def running(self) -> bool:
        return self.proc is not None and self.proc.returncode is None and not self._closed

    async def start(self, timeout: Optional[float] = None):
        """Spawn the server process and start the stdout reader."""
        if not self.command:
            raise JSONRPCError("Empty MCP command")

        creationflags = 0
        if sys.platform.startswith("win"):
            creationflags |= subprocess.CREATE_NO_WINDOW

        async def _spawn():
            self.proc = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=None,  # inherit: server diagnostics go straight to our stderr
                env=self.env,
                limit=_STREAM_LIMIT,
                creationflags=creationflags,
            )
            self._closed = False
            self.reader_task = asyncio.create_task(self._reader())

        to = timeout or self.start_timeout
        try:
            await asyncio.wait_for(_spawn(), timeout=to)
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"MCP start timeout after {to}s: {self.command}") from e

    def _fail_pending(self, err: Exception):
        for fut in self.pending.values():
            if not fut.done():
                fut.set_exception(err)
        self.pending.clear()

    async def _reader(self):
        assert self.proc and self.proc.stdout
        while True:
            try:
                line = await self.proc.stdout.readline()
            except Exception as e:
                log.error("mcp_reader_crashed", command=self.command, error=repr(e))
                self._closed = True
                self._fail_pending(ConnectionClosedError(f"MCP reader crashed: {e!r}"))
                return

            if not line:
                self._closed = True
                self._fail_pending(ConnectionClosedError("MCP process exited / pipe closed"))
                return

            raw = line.decode("utf-8", errors="ignore").strip()
            if not raw:
                continue
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                log.debug("mcp_stdout_noise", command=self.command, line=raw)
                continue
            if not isinstance(msg, dict):
                continue

            if "method" in msg:
                if "id" in msg:
                    await self._answer_server_request(msg)
                else:
                    log.debug("mcp_notification", method=msg["method"], params=msg.get("params"))
                continue

            if "id" in msg:
                fut = self.pending.pop(msg["id"], None)
                if fut and not fut.done():
                    fut.set_result(msg)

    async def _answer_server_request(self, msg: dict):
        if msg["method"] == "ping":
            reply = {"jsonrpc": "2.0", "id": msg["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": msg["id"],
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {msg['method']}"},
            }
        try:
            await self._write(reply)
        except ConnectionClosedError:
            pass

    async def _write(self, payload: dict):
        if not self.running or not self.proc.stdin:
            raise ConnectionClosedError("MCP process not running")
        data = (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")
        try:
            self.proc.stdin.write(data)
            await self.proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ConnectionClosedError(f"Failed to write to MCP stdin: {e!r}") from e

    async def _call(self, method: str, params: Any | None = None, *, timeout: Optional[float] = None):
        """Send a JSON-RPC request and wait for its response."""
        mid = str(uuid.uuid4())
        req = {"jsonrpc": "2.0", "id": mid, "method": method, "params": params or {}}

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self.pending[mid] = fut
        try:
            await self._write(req)
        except ConnectionClosedError:
            self.pending.pop(mid, None)
            raise

        to = timeout or self.call_timeout
        try:
            resp = await asyncio.wait_for(fut, timeout=to)
        except asyncio.TimeoutError as e:
            self.pending.pop(mid, None)
            raise TimeoutError(f"MCP call timeout after {to}s: {method}") from e

        if resp.get("error") is not None:
            err_obj = resp["error"]
            if isinstance(err_obj, dict):
                code, msg, data = err_obj.get("code"), err_obj.get("message", str(err_obj)), err_obj.get("data")
            else:
                code, msg, data = None, str(err_obj), None
            raise classify_error(code, msg)(f"{method} error: {msg}", code, data)

        return resp.get("result") or {}

    async def _notify(self, method: str, params: Any | None = None):
        await self._write({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def initialize(self, *, timeout: Optional[float] = None) -> Dict[str, Any]:
        result = await self._call(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": self.name, "version": __version__},
            },
            timeout=timeout or self.init_timeout,
        )
        self.server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        await self._notify("notifications/initialized")
        return result

    async def connect(self):
        await self.start()
        await self.initialize()

    async def list_tools(self) -> List[Dict[str, Any]]:
        tools: List[Dict[str, Any]] = []
        cursor = None
        while True:
            res = await self._call("tools/list", {"cursor": cursor} if cursor else {})
            for t in res.get("tools", []):
                # some minimal servers list bare names
                if isinstance(t, str):
                    tools.append({"name": t, "description": "", "inputSchema": {"type": "object"}})
                elif isinstance(t, dict) and "name" in t:
                    tools.append(t)
            cursor = res.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("tools/call", {"name": name, "arguments": arguments})

    async def close(self):
        """Stop the reader and the child process.

        Closing stdin on a process that already exited can raise
        BrokenPipeError; it is re-raised after the process is reaped.
        """
        if self.reader_task and not self.reader_task.done():
            self.reader_task.cancel()
            try:
                await self.reader_task
            except asyncio.CancelledError:
                pass
        self.reader_task = None

        proc, self.proc = self.proc, None
        self._closed = True
        self._fail_pending(ConnectionClosedError("MCP client closed"))
        if proc is None:
            return
        try:
            if proc.stdin and not proc.stdin.is_closing():
                proc.stdin.close()
                await proc.stdin.wait_closed()
        finally:
            await self._reap(proc)

    async def _reap(self, proc: asyncio.subprocess.Process):
        if proc.returncode is not None:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.close_grace)
            return
        except asyncio.TimeoutError:
            pass
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(proc.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            log.warning("mcp_process_did_not_exit", command=self.command)

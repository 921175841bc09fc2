import copy
from typing import Any, Dict, List

import pytest

from mcp_chat.config import ServerDescriptor
from mcp_chat.schema import ModelReply, ToolRequest
from mcp_chat.servers import ServerManager


class FakeClient:
    """Stands in for MCPClient inside ServerManager."""

    def __init__(self, tools=None, *, connect_error=None, list_errors=(), results=None, close_error=None):
        self.tools = tools or []
        self.connect_error = connect_error
        self.list_errors = list(list_errors)
        self.results = results or {}
        self.close_error = close_error
        self.list_calls = 0
        self.close_calls = 0
        self.calls: List[tuple] = []

    async def connect(self):
        if self.connect_error:
            raise self.connect_error

    async def list_tools(self):
        self.list_calls += 1
        if self.list_errors:
            raise self.list_errors.pop(0)
        return [dict(t) for t in self.tools]

    async def call_tool(self, name: str, arguments: Dict[str, Any]):
        self.calls.append((name, arguments))
        res = self.results.get(name)
        if isinstance(res, BaseException):
            raise res
        if callable(res):
            return res(arguments)
        if res is not None:
            return res
        return {"content": [{"type": "text", "text": str(arguments.get("text", ""))}]}

    async def close(self):
        self.close_calls += 1
        if self.close_error:
            raise self.close_error


class FakeBackend:
    """Scripted model backend; records what it was sent."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.sent: List[list] = []
        self.tools_seen: List[list] = []

    async def send_turn(self, conversation, tools):
        self.sent.append(copy.deepcopy(conversation))
        self.tools_seen.append([t.name for t in tools])
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


def tool(name: str, description: str = "") -> Dict[str, Any]:
    return {"name": name, "description": description or name, "inputSchema": {"type": "object"}}


def desc(server_id: str, command: str = "node", args=None, env=None) -> ServerDescriptor:
    return ServerDescriptor(server_id=server_id, command=command, args=args or ["server.js"], env=env)


def reply_text(text: str) -> ModelReply:
    return ModelReply(text=text)


def reply_tools(*calls, text: str = "") -> ModelReply:
    return ModelReply(text=text, tool_requests=[ToolRequest(id=i, name=n, arguments=a) for i, n, a in calls])


@pytest.fixture
def make_manager():
    def _make(clients: Dict[str, FakeClient], **kwargs):
        seen = {}

        def factory(d, command, args, env):
            seen[d.server_id] = {"command": command, "args": args, "env": env}
            return clients[d.server_id]

        kwargs.setdefault("retry_base_delay", 0)
        kwargs.setdefault("warmup_delay", 0)
        mgr = ServerManager(client_factory=factory, **kwargs)
        mgr.spawned = seen
        return mgr

    return _make

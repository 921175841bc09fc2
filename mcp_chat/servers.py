import asyncio
import enum
import os
import sys
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import structlog

from .config import MCPConfig, ServerDescriptor
from .mcp_client import MCPClient, NotInitializedError
from .schema import ToolDescriptor
from .tool_router import ToolNamespace, make_tool_id

log = structlog.get_logger(__name__)

MAX_LIST_ATTEMPTS = 5
RETRY_BASE_DELAY_S = 1.0
UVX_WARMUP_S = 2.0


class ServerState(str, enum.Enum):
    UNCONNECTED = "unconnected"
    CONNECTING = "connecting"
    INITIALIZING = "initializing"
    READY = "ready"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class ServerKind:
    is_py: bool = False
    is_npx: bool = False
    is_uvx: bool = False


def detect_server_kind(command: str, args: List[str]) -> ServerKind:
    joined = " ".join([command, *args])
    return ServerKind(
        is_py=command in ("python", "python3") or ".py" in joined,
        is_npx=command == "npx",
        is_uvx=command == "uvx" or "uvx" in joined,
    )


def normalize_command(command: str, args: List[str], platform: str = sys.platform) -> Tuple[str, List[str]]:
    """Adjust a configured launch command for the host OS.

    Windows needs `npx.cmd` and usually ships `python` rather than `python3`;
    elsewhere `python` is pinned to `python3`.
    """
    kind = detect_server_kind(command, args)
    if platform == "win32":
        if kind.is_npx:
            command = "npx.cmd"
        elif kind.is_py and command == "python3":
            command = "python"
    elif kind.is_py and command == "python":
        command = "python3"
    return command, list(args)


def merge_env(overrides: Optional[Mapping[str, str]]) -> Dict[str, str]:
    env = dict(os.environ)
    if overrides:
        env.update(overrides)
    return env


class ServerConnection:
    """A live connection to one tool server, owned by ServerManager."""

    def __init__(self, server_id: str, client: Any):
        self.server_id = server_id
        self.client = client
        self.state = ServerState.CONNECTING

    async def list_tools(self) -> List[Dict[str, Any]]:
        return await self.client.list_tools()

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return await self.client.call_tool(name, arguments)

    async def close(self):
        await self.client.close()


ClientFactory = Callable[[ServerDescriptor, str, List[str], Dict[str, str]], Any]


class ServerManager:
    """Brings up the configured tool servers and keeps the combined catalog.

    Servers are connected one at a time; a failing server is logged and left
    out without affecting the others. `tools`, `namespace` and the connection
    map are only mutated here.
    """

    def __init__(
        self,
        mcp_config: Optional[MCPConfig] = None,
        *,
        client_factory: Optional[ClientFactory] = None,
        max_attempts: int = MAX_LIST_ATTEMPTS,
        retry_base_delay: float = RETRY_BASE_DELAY_S,
        warmup_delay: float = UVX_WARMUP_S,
        platform: str = sys.platform,
    ):
        self.cfg = mcp_config or MCPConfig()
        self.client_factory = client_factory or self._default_client
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.warmup_delay = warmup_delay
        self.platform = platform

        self.connections: Dict[str, ServerConnection] = {}
        self.tools: List[ToolDescriptor] = []
        self.namespace = ToolNamespace()
        self.states: Dict[str, ServerState] = {}

    def _default_client(self, desc: ServerDescriptor, command: str, args: List[str], env: Dict[str, str]):
        return MCPClient(
            command,
            args,
            env=env,
            name=f"mcp-chat-{desc.server_id}",
            start_timeout=self.cfg.start_timeout_s,
            init_timeout=self.cfg.init_timeout_s,
            call_timeout=self.cfg.request_timeout_s,
        )

    def get_connection(self, server_id: str) -> Optional[ServerConnection]:
        return self.connections.get(server_id)

    @property
    def server_ids(self) -> List[str]:
        return list(self.connections)

    async def connect_all(
        self, descriptors: Union[Mapping[str, ServerDescriptor], Iterable[ServerDescriptor]]
    ) -> int:
        """Connect every server sequentially; returns how many became ready."""
        items = list(descriptors.values()) if isinstance(descriptors, Mapping) else list(descriptors)
        connected = 0
        for desc in items:
            if desc.server_id in self.connections:
                log.warning("server_already_connected", server_id=desc.server_id)
                continue
            self.states[desc.server_id] = ServerState.UNCONNECTED
            try:
                if await self._connect_one(desc):
                    connected += 1
            except Exception as e:
                # one bad server never aborts the batch
                log.error("server_connect_failed", server_id=desc.server_id, error=repr(e))
                self.states[desc.server_id] = ServerState.DISCONNECTED

        if connected == 0:
            log.warning(
                "no_servers_connected",
                detail="Client will keep running but MCP tool functionality is unavailable.",
            )
        log.info("servers_connected", servers=connected, tools=len(self.tools))
        return connected

    async def _connect_one(self, desc: ServerDescriptor) -> bool:
        sid = desc.server_id
        command, args = normalize_command(desc.command, list(desc.args), self.platform)
        kind = detect_server_kind(command, args)
        log.info(
            "server_connecting",
            server_id=sid,
            command=command,
            args=args,
            env_keys=sorted((desc.env or {}).keys()),
        )
        log.debug("server_kind", server_id=sid, **asdict(kind))

        self.states[sid] = ServerState.CONNECTING
        client = self.client_factory(desc, command, args, merge_env(desc.env))
        conn = ServerConnection(sid, client)
        try:
            await client.connect()
        except Exception as e:
            log.error("server_transport_failed", server_id=sid, error=repr(e))
            await self._close_quietly(conn)
            self.states[sid] = ServerState.DISCONNECTED
            return False

        conn.state = self.states[sid] = ServerState.INITIALIZING
        if kind.is_uvx and self.warmup_delay > 0:
            log.info("server_warmup", server_id=sid, delay_s=self.warmup_delay)
            await asyncio.sleep(self.warmup_delay)

        raw_tools = await self._list_tools_with_retry(conn)
        if raw_tools is None:
            await self._close_quietly(conn)
            conn.state = self.states[sid] = ServerState.DISCONNECTED
            return False

        registered = self._register_tools(sid, raw_tools)
        self.connections[sid] = conn
        conn.state = self.states[sid] = ServerState.READY
        log.info("server_ready", server_id=sid, tools=registered)
        return True

    async def _list_tools_with_retry(self, conn: ServerConnection) -> Optional[List[Dict[str, Any]]]:
        sid = conn.server_id
        for attempt in range(1, self.max_attempts + 1):
            try:
                tools = await conn.list_tools()
                log.info("server_tools_listed", server_id=sid, attempt=attempt)
                return tools
            except Exception as e:
                if attempt >= self.max_attempts:
                    log.error(
                        "server_tools_list_exhausted",
                        server_id=sid,
                        attempts=self.max_attempts,
                        error=repr(e),
                    )
                    return None
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                if isinstance(e, NotInitializedError):
                    log.warning("server_not_initialized", server_id=sid, attempt=attempt, retry_in_s=delay)
                else:
                    log.warning(
                        "server_tools_list_failed",
                        server_id=sid,
                        attempt=attempt,
                        retry_in_s=delay,
                        error=repr(e),
                    )
                await asyncio.sleep(delay)
        return None

    def _register_tools(self, server_id: str, raw_tools: List[Dict[str, Any]]) -> List[str]:
        registered: List[str] = []
        for t in raw_tools:
            local = t["name"]
            tool_id = make_tool_id(server_id, local)
            if tool_id in registered:
                log.warning("server_duplicate_tool", server_id=server_id, tool=local)
                continue
            registered.append(tool_id)
            self.namespace.register(tool_id, server_id, local)
            self.tools.append(
                ToolDescriptor(
                    name=tool_id,
                    description=f"[{server_id}] {t.get('description') or ''}".rstrip(),
                    input_schema=t.get("inputSchema") or {"type": "object", "properties": {}},
                    server_id=server_id,
                    local_name=local,
                )
            )
        return registered

    async def disconnect(self, server_id: str) -> None:
        """Drop one server: its connection, catalog entries and namespace entries."""
        conn = self.connections.pop(server_id, None)
        self.tools = [t for t in self.tools if t.server_id != server_id]
        removed = self.namespace.unregister_all_for_server(server_id)
        self.states[server_id] = ServerState.DISCONNECTED
        log.warning("server_disconnected", server_id=server_id, removed_tools=removed)
        if conn is not None:
            conn.state = ServerState.DISCONNECTED
            await self._close_quietly(conn)

    async def _close_quietly(self, conn: ServerConnection):
        try:
            await conn.close()
            log.info("server_closed", server_id=conn.server_id)
        except BrokenPipeError:
            # the child may already be gone
            log.info("server_close_epipe_ignored", server_id=conn.server_id)
        except Exception as e:
            log.error("server_close_failed", server_id=conn.server_id, error=repr(e))

    async def close_all(self) -> None:
        for sid, conn in list(self.connections.items()):
            await self._close_quietly(conn)
            conn.state = self.states[sid] = ServerState.DISCONNECTED
        self.connections.clear()
        self.tools = []
        self.namespace.clear()

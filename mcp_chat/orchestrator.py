import json
from collections import deque
from typing import Any, Deque, Dict, List, Mapping, Optional, Protocol

import structlog

from .errors import ModelBackendError, ToolLoopLimitError
from .llm import ModelBackend
from .mcp_client import is_disconnect
from .schema import (
    ErrorResult,
    ModelReply,
    OrchestratorResult,
    StructuredResult,
    TextResult,
    ToolCall,
    ToolDescriptor,
    ToolRequest,
    ToolResult,
    Turn,
)
from .tool_router import ToolNamespace

log = structlog.get_logger(__name__)

DEFAULT_MAX_STEPS = 10
RETRY_HINT = "please try a different approach or continue without this tool."


class ToolServers(Protocol):
    """What the orchestrator needs from ServerManager."""

    tools: List[ToolDescriptor]
    namespace: ToolNamespace

    def get_connection(self, server_id: str) -> Any: ...

    async def disconnect(self, server_id: str) -> None: ...


# ====== helpers ======
def parse_arguments(raw: Any) -> Dict[str, Any]:
    """Model-issued arguments as a dict; anything unparseable becomes {}."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, str):
        try:
            val = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("tool_arguments_unparseable", raw=raw[:200])
            return {}
        return val if isinstance(val, dict) else {}
    return {}


def _is_text_blocks(content: Any) -> bool:
    return (
        isinstance(content, list)
        and bool(content)
        and all(isinstance(b, Mapping) and b.get("type") == "text" for b in content)
    )


def _join_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if _is_text_blocks(content):
        return "\n".join(b.get("text", "") for b in content)
    return json.dumps(content, ensure_ascii=False, default=str)


def to_tool_result(raw: Any, flatten: bool = True) -> ToolResult:
    """Classify a `tools/call` result into one of the ToolResult variants."""
    if not isinstance(raw, Mapping):
        return TextResult(raw) if isinstance(raw, str) else StructuredResult(raw)
    content = raw.get("content")
    if raw.get("isError"):
        return ErrorResult(_join_text(content) if content else "tool reported an error")
    if isinstance(content, str):
        return TextResult(content)
    if flatten and _is_text_blocks(content):
        return TextResult(_join_text(content))
    if content is None and "structuredContent" in raw:
        return StructuredResult(raw["structuredContent"])
    return StructuredResult(content)


def render_result(result: ToolResult) -> str:
    if isinstance(result, TextResult):
        return result.text
    if isinstance(result, StructuredResult):
        return json.dumps(result.content, ensure_ascii=False, default=str)
    if isinstance(result, ErrorResult):
        return result.message
    raise TypeError(f"unknown tool result type: {type(result).__name__}")


class ToolCallOrchestrator:
    """Runs one query through the ask-model / call-tools / resume loop.

    Subclasses decide how tool results are folded back into the conversation
    for their backend; resolution, dispatch and failure isolation live here.
    """

    backend = ""

    def __init__(
        self,
        servers: ToolServers,
        llm: ModelBackend,
        *,
        max_steps: int = DEFAULT_MAX_STEPS,
        flatten_tool_results: bool = True,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        self.servers = servers
        self.llm = llm
        self.max_steps = max_steps
        self.flatten = flatten_tool_results

    async def process_query(self, query: str, history: Optional[List[Turn]] = None) -> str:
        return (await self.run(query, history)).final_text

    async def run(self, query: str, history: Optional[List[Turn]] = None) -> OrchestratorResult:
        conversation: List[Turn] = list(history or [])
        conversation.append(Turn(role="user", content=query))
        result = OrchestratorResult(final_text="")
        try:
            await self._loop(conversation, result)
        except Exception as e:
            log.error("query_failed", backend=self.backend, steps=result.steps, error=repr(e))
            raise
        log.info("query_done", backend=self.backend, steps=result.steps, tools=len(result.used_tools))
        return result

    async def _loop(self, conversation: List[Turn], result: OrchestratorResult) -> None:
        raise NotImplementedError

    async def _ask(self, conversation: List[Turn], result: OrchestratorResult) -> ModelReply:
        if result.steps >= self.max_steps:
            raise ToolLoopLimitError(result.steps)
        result.steps += 1
        return await self.llm.send_turn(conversation, list(self.servers.tools))

    async def dispatch(self, request: ToolRequest, result: OrchestratorResult) -> ToolResult:
        """Resolve and invoke one requested tool; failures come back as ErrorResult."""
        args = parse_arguments(request.arguments)
        entry = self.servers.namespace.resolve(request.name)
        if entry is None:
            log.warning("tool_unknown", tool=request.name)
            server_id = local_name = request.name
        else:
            server_id, local_name = entry.server_id, entry.local_name

        call = ToolCall(name=request.name, args=args, server_id=server_id, local_name=local_name)
        result.used_tools.append(call)

        conn = self.servers.get_connection(server_id)
        if conn is None:
            outcome: ToolResult = ErrorResult(f"No MCP connection found for server '{server_id}'")
        else:
            log.debug("tool_call", tool=request.name, server_id=server_id, args=args)
            try:
                raw = await conn.call_tool(local_name, args)
                outcome = to_tool_result(raw, self.flatten)
            except Exception as e:
                msg = str(e) or e.__class__.__name__
                log.error("tool_call_failed", tool=request.name, server_id=server_id, error=msg)
                if is_disconnect(e):
                    await self.servers.disconnect(server_id)
                outcome = ErrorResult(msg)

        if isinstance(outcome, ErrorResult):
            call.ok = False
            result.errors.append(f"{request.name}: {outcome.message}")
        return outcome


class OpenAIToolOrchestrator(ToolCallOrchestrator):
    """Tool results go back as `tool` turns, all of a batch in one follow-up call."""

    backend = "openai"

    @staticmethod
    def tool_content(outcome: ToolResult) -> str:
        if isinstance(outcome, ErrorResult):
            return f"Error: {outcome.message}. The tool call failed, {RETRY_HINT}"
        return render_result(outcome)

    async def _loop(self, conversation: List[Turn], result: OrchestratorResult) -> None:
        reply = await self._ask(conversation, result)
        while reply.wants_tools:
            conversation.append(
                Turn(role="assistant", content=reply.text or None, tool_requests=list(reply.tool_requests))
            )
            for req in reply.tool_requests:
                outcome = await self.dispatch(req, result)
                conversation.append(
                    Turn(
                        role="tool",
                        content=self.tool_content(outcome),
                        tool_call_id=req.id,
                        is_error=isinstance(outcome, ErrorResult),
                    )
                )
            reply = await self._ask(conversation, result)
        result.final_text = reply.text


class AnthropicToolOrchestrator(ToolCallOrchestrator):
    """Tool results go back as plain user turns, one model call per result.

    Requests issued by follow-up replies queue behind the ones still pending.
    """

    backend = "anthropic"

    @staticmethod
    def tool_content(name: str, outcome: ToolResult) -> str:
        if isinstance(outcome, ErrorResult):
            return f"Error when calling tool {name}: {outcome.message}. {RETRY_HINT.capitalize()}"
        return f"Tool result for {name}: {render_result(outcome)}"

    async def _loop(self, conversation: List[Turn], result: OrchestratorResult) -> None:
        reply = await self._ask(conversation, result)
        pending: Deque[ToolRequest] = deque(reply.tool_requests)
        while pending:
            if reply.text:
                conversation.append(Turn(role="assistant", content=reply.text))
            req = pending.popleft()
            outcome = await self.dispatch(req, result)
            conversation.append(
                Turn(
                    role="user",
                    content=self.tool_content(req.name, outcome),
                    is_error=isinstance(outcome, ErrorResult),
                )
            )
            reply = await self._ask(conversation, result)
            pending.extend(reply.tool_requests)
        result.final_text = reply.text


ORCHESTRATORS = {
    "openai": OpenAIToolOrchestrator,
    "anthropic": AnthropicToolOrchestrator,
}


def create_orchestrator(
    backend: str,
    servers: ToolServers,
    llm: ModelBackend,
    *,
    max_steps: int = DEFAULT_MAX_STEPS,
    flatten_tool_results: bool = True,
) -> ToolCallOrchestrator:
    cls = ORCHESTRATORS.get(backend.lower())
    if cls is None:
        raise ModelBackendError(f"Unknown LLM backend {backend!r}")
    return cls(servers, llm, max_steps=max_steps, flatten_tool_results=flatten_tool_results)

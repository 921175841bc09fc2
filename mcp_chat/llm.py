import json
from typing import Any, Dict, List, Optional, Protocol

import structlog
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from .config import LLMConfig
from .errors import ModelBackendError
from .schema import ModelReply, ToolDescriptor, ToolRequest, Turn

log = structlog.get_logger(__name__)

BACKENDS = ("openai", "anthropic")


class ModelBackend(Protocol):
    async def send_turn(self, conversation: List[Turn], tools: List[ToolDescriptor]) -> ModelReply: ...


def _arguments_json(arguments: Any) -> str:
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments or {}, ensure_ascii=False)


class OpenAIChat:
    """OpenAI Chat Completions (v1+) with function tools."""

    def __init__(self, model: str = "gpt-4o", api_key: Optional[str] = None, max_tokens: int = 1000, client=None):
        if client is None and not api_key:
            raise ModelBackendError("OPENAI_API_KEY is not set. Put it in .env or the environment.")
        self.model = model
        self.max_tokens = max_tokens
        self._async = client or AsyncOpenAI(api_key=api_key)

    @staticmethod
    def render_messages(conversation: List[Turn]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for t in conversation:
            if t.role == "tool":
                out.append({"role": "tool", "tool_call_id": t.tool_call_id, "content": t.content or ""})
            elif t.role == "assistant" and t.tool_requests:
                out.append({
                    "role": "assistant",
                    "content": t.content or None,
                    "tool_calls": [
                        {
                            "id": r.id,
                            "type": "function",
                            "function": {"name": r.name, "arguments": _arguments_json(r.arguments)},
                        }
                        for r in t.tool_requests
                    ],
                })
            else:
                out.append({"role": t.role, "content": t.content or ""})
        return out

    @staticmethod
    def render_tools(tools: List[ToolDescriptor]) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {"name": t.name, "description": t.description, "parameters": t.input_schema or {}},
            }
            for t in tools
        ]

    async def send_turn(self, conversation: List[Turn], tools: List[ToolDescriptor]) -> ModelReply:
        kwargs: Dict[str, Any] = {}
        if tools:
            kwargs["tools"] = self.render_tools(tools)
        resp = await self._async.chat.completions.create(
            model=self.model,
            messages=self.render_messages(conversation),
            max_tokens=self.max_tokens,
            **kwargs,
        )
        msg = resp.choices[0].message
        requests = [
            ToolRequest(id=tc.id, name=tc.function.name, arguments=tc.function.arguments)
            for tc in (msg.tool_calls or [])
        ]
        log.debug("openai_reply", text_len=len(msg.content or ""), tool_calls=[r.name for r in requests])
        return ModelReply(text=(msg.content or "").strip(), tool_requests=requests)


class AnthropicChat:
    """Anthropic Messages API with tool use."""

    def __init__(
        self,
        model: str = "claude-3-5-sonnet-20241022",
        api_key: Optional[str] = None,
        max_tokens: int = 1000,
        client=None,
    ):
        if client is None and not api_key:
            raise ModelBackendError("ANTHROPIC_API_KEY is not set. Put it in .env or the environment.")
        self.model = model
        self.max_tokens = max_tokens
        self._async = client or AsyncAnthropic(api_key=api_key)

    @staticmethod
    def render_messages(conversation: List[Turn]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for t in conversation:
            if not t.content:
                continue  # the API rejects empty text blocks
            role = "assistant" if t.role == "assistant" else "user"
            out.append({"role": role, "content": t.content})
        return out

    @staticmethod
    def render_tools(tools: List[ToolDescriptor]) -> List[Dict[str, Any]]:
        return [
            {"name": t.name, "description": t.description, "input_schema": t.input_schema or {"type": "object"}}
            for t in tools
        ]

    async def send_turn(self, conversation: List[Turn], tools: List[ToolDescriptor]) -> ModelReply:
        kwargs: Dict[str, Any] = {}
        if tools:
            kwargs["tools"] = self.render_tools(tools)
        resp = await self._async.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=self.render_messages(conversation),
            **kwargs,
        )
        texts: List[str] = []
        requests: List[ToolRequest] = []
        for block in resp.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                requests.append(ToolRequest(id=block.id, name=block.name, arguments=block.input))
        log.debug("anthropic_reply", text_blocks=len(texts), tool_calls=[r.name for r in requests])
        return ModelReply(text="\n".join(texts).strip(), tool_requests=requests)


def create_backend(cfg: LLMConfig) -> ModelBackend:
    if cfg.backend == "openai":
        return OpenAIChat(model=cfg.openai_model, api_key=cfg.openai_api_key, max_tokens=cfg.max_tokens)
    if cfg.backend == "anthropic":
        return AnthropicChat(model=cfg.anthropic_model, api_key=cfg.anthropic_api_key, max_tokens=cfg.max_tokens)
    raise ModelBackendError(f"Unknown LLM backend {cfg.backend!r}; expected one of {', '.join(BACKENDS)}")

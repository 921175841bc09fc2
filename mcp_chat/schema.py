from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union

Role = Literal["user", "assistant", "tool"]


@dataclass(frozen=True)
class ToolDescriptor:
    name: str                  # namespaced identifier, e.g. "files_read"
    description: str           # "[files] Read a file"
    input_schema: Dict[str, Any]
    server_id: str
    local_name: str


@dataclass
class ToolRequest:
    id: str
    name: str
    arguments: Any = None      # JSON string (OpenAI) or dict (Anthropic)


@dataclass
class Turn:
    role: Role
    content: Optional[str] = None
    tool_requests: List[ToolRequest] = field(default_factory=list)
    tool_call_id: Optional[str] = None   # set on tool-result turns
    is_error: bool = False


@dataclass
class ModelReply:
    text: str = ""
    tool_requests: List[ToolRequest] = field(default_factory=list)

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_requests)


# ---- tool results ----
@dataclass(frozen=True)
class TextResult:
    text: str


@dataclass(frozen=True)
class StructuredResult:
    content: Any


@dataclass(frozen=True)
class ErrorResult:
    message: str


ToolResult = Union[TextResult, StructuredResult, ErrorResult]


@dataclass
class ToolCall:
    name: str                  # identifier the model used
    args: Dict[str, Any]
    server_id: str
    local_name: str
    ok: bool = True


@dataclass
class OrchestratorResult:
    final_text: str
    used_tools: List[ToolCall] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    steps: int = 0

from typing import Any, Optional


class McpChatError(Exception):
    pass


class ConfigError(McpChatError):
    """Configuration file missing, unparseable or empty."""


class JSONRPCError(McpChatError):
    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class NotInitializedError(JSONRPCError):
    """Request reached the server before its own handshake completed."""


class ConnectionClosedError(JSONRPCError):
    """Server process exited, the pipe broke, or it was never started."""


class ModelBackendError(McpChatError):
    pass


class ToolLoopLimitError(McpChatError):
    def __init__(self, steps: int):
        super().__init__(f"Tool-calling loop stopped after {steps} model calls without a final answer")
        self.steps = steps

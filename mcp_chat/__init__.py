__version__ = "0.1.0"

from .errors import ConfigError, McpChatError, ToolLoopLimitError  # noqa: E402
from .memory import ChatHistory  # noqa: E402
from .orchestrator import create_orchestrator  # noqa: E402
from .servers import ServerManager  # noqa: E402
from .tool_router import ToolNamespace  # noqa: E402

import asyncio
import threading

import structlog
from rich.console import Console

from .config import AppConfig, ConfigError, load_server_config
from .llm import create_backend
from .logsetup import setup_logging
from .memory import ChatHistory
from .orchestrator import create_orchestrator
from .servers import ServerManager

log = structlog.get_logger(__name__)

QUIT_WORDS = ("quit", "exit")


def _settle(fut: asyncio.Future, line, exc):
    if fut.done():
        return
    if exc is not None:
        fut.set_exception(exc)
    else:
        fut.set_result(line)


async def read_line(prompt: str = "") -> str:
    """Read one line from stdin on a daemon thread.

    A blocked `input()` must not keep the interpreter alive once the loop is
    cancelled (Ctrl-C), so the thread is never joined.
    """
    loop = asyncio.get_running_loop()
    fut = loop.create_future()

    def worker():
        try:
            line, exc = input(prompt), None
        except Exception as e:
            line, exc = None, e
        try:
            loop.call_soon_threadsafe(_settle, fut, line, exc)
        except RuntimeError:
            # loop already closed
            pass

    threading.Thread(target=worker, name="mcp-chat-stdin", daemon=True).start()
    return await fut


async def connect_servers(cfg: AppConfig, manager: ServerManager) -> int:
    try:
        descriptors = load_server_config(cfg.mcp.config_path)
    except ConfigError as e:
        log.error("mcp_config_error", error=str(e))
        log.warning("mcp_continuing_without_servers")
        return 0
    return await manager.connect_all(descriptors)


async def chat_loop(orch, history: ChatHistory, cons: Console):
    while True:
        try:
            q = (await read_line("\nQuery: ")).strip()
        except EOFError:
            break
        if q.lower() in QUIT_WORDS:
            break
        if not q:
            cons.print("Query cannot be empty. Please try again.")
            continue
        try:
            res = await orch.run(q, history.turns())
        except Exception:
            # already logged by the orchestrator
            cons.print('[red]Sorry, there was an error processing your query.[/red] Try again or type "quit" to exit.')
            continue
        history.append(q, res.final_text)
        cons.print("\n" + res.final_text, markup=False)
        if res.errors:
            cons.print("[red]Tool errors:[/red]", res.errors)


async def main():
    cfg = AppConfig.from_env()
    setup_logging(cfg.log_level, cfg.log_json)
    cons = Console()

    manager = ServerManager(cfg.mcp)
    try:
        llm = create_backend(cfg.llm)
        orch = create_orchestrator(
            cfg.llm.backend,
            manager,
            llm,
            max_steps=cfg.loop.max_tool_steps,
            flatten_tool_results=cfg.loop.flatten_tool_results,
        )
        await connect_servers(cfg, manager)
        model = cfg.llm.openai_model if cfg.llm.backend == "openai" else cfg.llm.anthropic_model
        cons.print(f"MCP client started. Using {cfg.llm.backend.upper()} (model: {model}).")
        cons.print(f"{len(manager.tools)} tools from {len(manager.connections)} servers. Type 'quit' to exit.")
        await chat_loop(orch, ChatHistory(cfg.loop.max_chat_turns), cons)
    finally:
        await manager.close_all()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()

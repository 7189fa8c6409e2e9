"""Command-line entry point: one-shot prompt or interactive session."""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from . import __version__
from .agent import Agent
from .config import Config
from .dispatcher import ToolDispatcher
from .errors import TransportError
from .interrupt import CancelToken, SigintCanceller
from .logger import get_logger, init_logging
from .mcp_registry import RemoteToolRegistry
from .permissions import PermissionGate, PermissionMode, describe_permission_mode
from .stream_parser import ContentToken, ReasoningToken, StreamToken, ToolCallData, ToolCallToken
from .streaming_client import ModelRequestError, StreamingClient
from .tool_handlers import ToolHandlers
from .tool_registry import ToolMetrics
from .tools.result import ToolResult
from .undo import UndoLog

log = get_logger("cli")

HELP_TEXT = """[bold]Commands:[/bold]

  [cyan]/undo[/cyan]                      Revert the last file change
  [cyan]/mode[/cyan] [auto|ask|strict]    Show or set the permission mode
  [cyan]/mcp[/cyan] [connect|disconnect <name> | tools]
                             Manage remote tool servers
  [cyan]/stats[/cyan]                     Show tool call counts and timings
  [cyan]/help[/cyan]                      Show this help
  [cyan]/exit[/cyan]                      Exit the session"""


class Session:
    """Wires config, tools and the agent together for the terminal."""

    def __init__(self, config: Config, console: Optional[Console] = None):
        self.config = config
        self.console = console or Console()
        self.gate = PermissionGate(config.permission_mode)
        self.undo_log = UndoLog(limit=config.undo_limit)
        self.remote = RemoteToolRegistry(
            request_timeout=config.request_timeout,
            handshake_timeout=config.handshake_timeout,
        )
        self.metrics = ToolMetrics()
        self.dispatcher = ToolDispatcher(ToolHandlers(self.undo_log), self.remote, self.gate,
                                         metrics=self.metrics)

    # ── Rendering ────────────────────────────────────────────────

    def on_token(self, token: StreamToken) -> None:
        if isinstance(token, ContentToken):
            self.console.print(token.text, end="", markup=False, highlight=False)
        elif isinstance(token, ReasoningToken):
            self.console.print(token.text, end="", style="dim italic", markup=False, highlight=False)
        elif isinstance(token, ToolCallToken):
            self.console.print(f"\n[cyan]→ {token.call.name}[/cyan] [dim]{token.call.id}[/dim]")

    def on_result(self, result: ToolResult) -> None:
        style = "green" if result.success else "red"
        first_line = result.result.split("\n", 1)[0]
        self.console.print(f"  [{style}]{'✓' if result.success else '✗'} {result.tool}[/{style}] "
                           f"[dim]{first_line[:120]}[/dim]", highlight=False)

    async def approve(self, call: ToolCallData, pending: ToolResult) -> bool:
        self.console.print()
        self.console.print(pending.result, markup=False, highlight=False)
        answer = await asyncio.to_thread(
            Prompt.ask, "Allow?  y = yes, n = no, a = always for this tool",
            console=self.console, choices=["y", "n", "a"], default="y",
        )
        if answer == "a":
            self.gate.allow_always(call.name)
        return answer in ("y", "a")

    # ── Commands ─────────────────────────────────────────────────

    def cmd_undo(self) -> None:
        outcome = self.undo_log.undo_last_change()
        style = "green" if outcome.success else "yellow"
        self.console.print(f"[{style}]{outcome.message}[/{style}]", highlight=False)

    def cmd_mode(self, args: List[str]) -> None:
        if args:
            try:
                self.gate.set_permission_mode(args[0])
            except ValueError as e:
                self.console.print(f"[red]{e}[/red]")
                return
        mode = self.gate.get_permission_mode()
        self.console.print(f"Permission mode: [bold]{mode.value}[/bold] [dim]({describe_permission_mode(mode)})[/dim]")

    async def cmd_mcp(self, args: List[str]) -> None:
        servers = self.config.mcp_servers
        if len(args) >= 2 and args[0] in ("connect", "disconnect"):
            name = args[1]
            if name not in servers:
                self.console.print(f"[red]No MCP server named '{name}' is configured.[/red]")
                return
            if args[0] == "disconnect":
                await self.remote.disconnect_server(name)
                self.console.print(f"Disconnected {name}.")
                return
            try:
                tools = await self.remote.connect_server(name, servers[name])
            except TransportError as e:
                self.console.print(f"[red]{e}[/red]")
                return
            self.console.print(f"Connected {name} ({len(tools)} tools).")
            return
        if args and args[0] == "tools":
            tools = self.remote.list_all_tools()
            if not tools:
                self.console.print("No remote tools available.")
            for tool in tools:
                self.console.print(f"  [cyan]{tool.name}[/cyan] [dim]({tool.server_name})[/dim] {tool.description}")
            return
        self.console.print(self.remote.format_status(servers), highlight=False)

    def cmd_stats(self) -> None:
        summary = self.metrics.summary()
        if not summary["total_calls"]:
            self.console.print("No tool calls yet.")
            return
        table = Table(title=f"{summary['total_calls']} calls, {summary['total_errors']} failed")
        for column in ("tool", "calls", "errors", "avg ms", "max ms"):
            table.add_column(column, justify="left" if column == "tool" else "right")
        for name, row in summary["per_tool"].items():
            label = f"{name} [dim](remote)[/dim]" if row["remote"] else name
            table.add_row(label, str(row["calls"]), str(row["errors"]),
                          f"{row['avg_ms']:.1f}", f"{row['max_ms']:.1f}")
        self.console.print(table)

    # ── Running ──────────────────────────────────────────────────

    async def run_prompt(self, agent: Agent, text: str) -> None:
        cancel = CancelToken()
        with SigintCanceller(cancel):
            try:
                result = await agent.run(text, cancel)
            except ModelRequestError as e:
                self.console.print(f"\n[red]{e}[/red]")
                return
        self.console.print()
        if result.cancelled:
            self.console.print("[yellow]Interrupted.[/yellow]")

    async def run(self, prompt: Optional[str] = None) -> int:
        try:
            await self.remote.connect_all(self.config.mcp_servers)
        except TransportError as e:
            self.console.print(f"[red]Required MCP server failed: {e}[/red]")
            await self.remote.disconnect_all()
            return 1

        try:
            async with StreamingClient.from_config(self.config) as client:
                agent = Agent(self.config, client, self.dispatcher, self.gate,
                              approver=self.approve, on_token=self.on_token, on_result=self.on_result)
                if prompt is not None:
                    await self.run_prompt(agent, prompt)
                    return 0
                await self.interactive(agent)
                return 0
        finally:
            await self.remote.disconnect_all()

    async def interactive(self, agent: Agent) -> None:
        self.console.print(Panel.fit(
            f"[bold blue]toolpipe {__version__}[/bold blue]\n"
            f"Model: [cyan]{self.config.model}[/cyan]\n"
            f"Workspace: [dim]{self.config.workspace_path}[/dim]\n"
            f"Mode: [bold]{self.gate.get_permission_mode().value}[/bold]",
            border_style="blue",
        ))
        self.console.print("[dim]Commands: /undo, /mode, /mcp, /stats, /help, /exit[/dim]\n")

        while True:
            try:
                user_input = (await asyncio.to_thread(Prompt.ask, "[bold]>[/bold]", console=self.console)).strip()
            except (KeyboardInterrupt, EOFError):
                self.console.print("\n[dim]Goodbye![/dim]")
                return
            if not user_input:
                continue

            if user_input.startswith("/"):
                cmd, *args = user_input.split()
                cmd = cmd.lower()
                if cmd in ("/exit", "/quit", "/q"):
                    self.console.print("[dim]Goodbye![/dim]")
                    return
                elif cmd == "/undo":
                    self.cmd_undo()
                elif cmd == "/mode":
                    self.cmd_mode(args)
                elif cmd == "/mcp":
                    await self.cmd_mcp(args)
                elif cmd == "/stats":
                    self.cmd_stats()
                elif cmd == "/help":
                    self.console.print(Panel(HELP_TEXT, title="Help", border_style="cyan"))
                else:
                    self.console.print(f"[yellow]Unknown command: {cmd}[/yellow]")
                continue

            await self.run_prompt(agent, user_input)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toolpipe",
        description="Streaming coding assistant with local and MCP tools",
    )
    parser.add_argument("prompt", nargs="?", help="Run a single prompt and exit")
    parser.add_argument("-w", "--workspace", default=".", help="Workspace directory (default: current directory)")
    parser.add_argument("--mode", choices=[m.value for m in PermissionMode],
                        help="Permission mode (default: from config, else ask)")
    parser.add_argument("-e", "--env", default=".env", help="Path to .env file (default: .env)")
    parser.add_argument("--max-turns", type=int, help="Maximum model turns per prompt")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    workspace = Path(args.workspace).resolve()
    init_logging(str(workspace))

    config = Config.from_env(Path(args.env), workspace=workspace)
    config.workspace_path = workspace
    if args.mode:
        config.permission_mode = args.mode
    if args.max_turns:
        config.max_turns = args.max_turns

    try:
        config.validate()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    log.info("Starting toolpipe workspace=%s model=%s mode=%s", workspace, config.model, config.permission_mode)
    try:
        return asyncio.run(Session(config).run(args.prompt))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())

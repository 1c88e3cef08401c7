"""DraftCraft CLI: refine a request with a chat model, then hand it to an agent.

Usage:
    draftcraft                 # Interactive session (same as `draftcraft chat`)
    draftcraft chat            # Interactive session
    draftcraft bot             # Run the Slack bot (Socket Mode)
    draftcraft setup           # Write .env interactively
    draftcraft config          # Show effective configuration
    draftcraft -v chat         # Verbose logging

Inside a session:
    /help /engine [codex|claude|auto] /reset /finalize /run /exit, ? for help
"""

import asyncio
import json
import logging
import sys

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from draftcraft import __version__
from draftcraft.config import DraftConfig
from draftcraft.engine import DraftEngine
from draftcraft.errors import ConfigurationError, DraftCraftError, GuardRejected
from draftcraft.executor import parse_executor_mode
from draftcraft.llm import PROVIDER_LABELS, LlmClient
from draftcraft.runner import format_exit_code
from draftcraft.session import Session
from draftcraft.setup_wizard import SetupCancelled, ensure_setup, run_setup

logger = logging.getLogger(__name__)
console = Console()

CLI_SESSION_ID = "cli-session"
CLI_OWNER_ID = "cli-user"

SLASH_COMMANDS = {
    "/help": "Show help",
    "/engine": "Show or change the executor mode (codex / claude / auto)",
    "/reset": "Clear the conversation",
    "/finalize": "Build and save the final instruction",
    "/run": "Build the final instruction and start the executor",
    "/exit": "Quit",
}

BANNER = r"""
 ____             __ _    ____            __ _
|  _ \ _ __ __ _ / _| |_ / ___|_ __ __ _ / _| |_
| | | | '__/ _` | |_| __| |   | '__/ _` | |_| __|
| |_| | | | (_| |  _| |_| |___| | | (_| |  _| |_
|____/|_|  \__,_|_|  \__|\____|_|  \__,_|_|  \__|
"""


def _run_async(coro):
    """Run async function from sync context."""
    return asyncio.run(coro)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def matching_commands(prefix: str) -> list[str]:
    """Slash commands starting with ``prefix``, or all of them if none match."""
    matches = [c for c in SLASH_COMMANDS if c.startswith(prefix)]
    return matches or list(SLASH_COMMANDS)


class ChatRepl:
    """Line-oriented session loop over a DraftEngine."""

    def __init__(self, engine: DraftEngine, session: Session, out: Console | None = None):
        self.engine = engine
        self.session = session
        self.console = out or console

    def print_banner(self) -> None:
        config = self.engine.config
        self.console.print(BANNER, style="bold magenta", highlight=False)
        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column(style="dim")
        table.add_column()
        table.add_row("provider", PROVIDER_LABELS[config.llm.provider])
        table.add_row("model", config.llm.model)
        table.add_row("workdir", config.executor.workdir)
        table.add_row("executor", self.session.executor_mode.value)
        self.console.print(Panel(table, title=f"DraftCraft {__version__}", border_style="magenta"))
        self.console.print("[dim]? for shortcuts[/]\n")

    def print_help(self) -> None:
        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column(style="cyan")
        table.add_column()
        table.add_row("?", "Show shortcuts")
        for name, description in SLASH_COMMANDS.items():
            table.add_row(name, description)
        table.add_row("/engine X", "Set the executor mode (X: codex|claude|auto)")
        self.console.print(table)
        self.console.print()

    def print_candidates(self, prefix: str) -> None:
        for name in matching_commands(prefix):
            self.console.print(f"  [cyan]{name:<10}[/] {SLASH_COMMANDS[name]}")
        self.console.print()

    async def run(self) -> None:
        self.print_banner()
        while True:
            try:
                line = await asyncio.to_thread(self.console.input, "[bold]> [/]")
            except (EOFError, KeyboardInterrupt):
                self.console.print()
                break
            if not await self.handle_line(line):
                break
        self.console.print("Bye.")

    async def handle_line(self, line: str) -> bool:
        """Handle one input line. Returns False when the session should end."""
        line = line.strip()
        if not line:
            return True
        if line == "?":
            self.print_help()
            return True
        if line.startswith("/"):
            return await self._handle_command(line)

        try:
            turn = await self.engine.respond(self.session, line)
        except GuardRejected as e:
            self.console.print(f"[yellow]{e}[/]\n")
            return True
        except DraftCraftError as e:
            self.console.print(f"[red]Chat request failed:[/] {e}\n")
            return True

        if turn.context_error:
            self.console.print(f"[dim]project> survey failed, continuing without it: {turn.context_error}[/]")
        elif turn.resolved_projects:
            self.console.print(f"[dim]project> using notes on {', '.join(turn.resolved_projects)}[/]")
        self.console.print(f"[green]assistant>[/] {turn.reply}\n", highlight=False)
        return True

    async def _handle_command(self, line: str) -> bool:
        name, _, arg = line.partition(" ")
        arg = arg.strip()

        if name == "/exit":
            return False
        if name == "/help":
            self.print_help()
        elif name == "/engine":
            self._engine_command(arg)
        elif name == "/reset":
            self.session.reset()
            self.console.print("Conversation cleared.\n")
        elif name == "/finalize":
            await self._finalize()
        elif name == "/run":
            await self._run()
        else:
            self.print_candidates(name)
        return True

    def _engine_command(self, arg: str) -> None:
        if not arg:
            self.console.print(f"Executor mode: [bold]{self.session.executor_mode.value}[/]\n")
            return
        mode = parse_executor_mode(arg)
        if mode is None:
            self.console.print("[yellow]Invalid mode. Use `/engine codex|claude|auto`.[/]\n")
            return
        self.session.executor_mode = mode
        self.console.print(f"Executor mode set to [bold]{mode.value}[/].\n")

    async def _finalize(self) -> None:
        self.console.print("[dim]Building the final instruction...[/]")
        try:
            finalized = await self.engine.finalize(self.session)
        except DraftCraftError as e:
            self.console.print(f"[red]Could not build the final instruction:[/] {e}\n")
            return
        self.console.print(Panel(finalized.text, title="Final instruction", border_style="cyan"))
        self.console.print(f"Saved to: {finalized.path}\n")

    async def _run(self) -> None:
        self.console.print("[dim]Building the final instruction and starting the executor...[/]")

        def on_chunk(chunk: str) -> None:
            self.console.out(chunk, end="", highlight=False)

        try:
            start = await self.engine.finalize_and_run(
                self.session, CLI_OWNER_ID, on_stream_chunk=on_chunk,
            )
        except DraftCraftError as e:
            self.console.print(f"[red]Run failed:[/] {e}\n")
            return

        self.console.print(f"Executor: [bold]{start.selection.label}[/] ({start.selection.reason})")
        exit_code = await start.handle.wait()

        self.console.print()
        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column(style="dim")
        table.add_column()
        table.add_row("run id", start.run_id)
        table.add_row("prompt", str(start.prompt_path))
        table.add_row("log", str(start.log_file_path))
        table.add_row("exit code", format_exit_code(exit_code))
        self.console.print(table)

        explanation = await self.engine.explain(start.selection, exit_code, start.log_file_path)
        self.console.print(f"\n{explanation}\n", highlight=False)


class DraftCLI(click.Group):
    """Custom group that runs the interactive session when no command is given."""

    def parse_args(self, ctx, args):
        if not any(a in self.commands for a in args) and "--help" not in args:
            args = list(args) + ["chat"]
        return super().parse_args(ctx, args)


@click.group(cls=DraftCLI)
@click.option("--verbose", "-v", is_flag=True, help="Log at INFO level")
@click.version_option(__version__, prog_name="draftcraft")
def cli(verbose):
    """DraftCraft: refine a work request, then run it with Codex CLI or Claude Code."""
    _configure_logging(verbose)


def _load_config() -> DraftConfig:
    try:
        return DraftConfig.load()
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration error:[/]\n{e}")
        console.print("[dim]Run `draftcraft setup` to fix it.[/]")
        sys.exit(1)


@cli.command()
def chat():
    """Interactive refine-and-run session."""
    try:
        ensure_setup()
    except SetupCancelled as e:
        console.print(f"[yellow]{e}[/]")
        sys.exit(1)
    config = _load_config()

    engine = DraftEngine(config, LlmClient(config.llm))
    session = engine.new_session(CLI_SESSION_ID, CLI_OWNER_ID)
    _run_async(ChatRepl(engine, session).run())


@cli.command()
def bot():
    """Run the Slack bot (Socket Mode)."""
    from draftcraft.slack_bot import run_bot

    config = _load_config()
    try:
        _run_async(run_bot(config))
    except ConfigurationError as e:
        console.print(f"[bold red]{e}[/]")
        sys.exit(1)
    except KeyboardInterrupt:
        pass


@cli.command()
def setup():
    """Write .env interactively."""
    try:
        run_setup()
    except SetupCancelled as e:
        console.print(f"[yellow]{e}[/]")
        sys.exit(1)


@cli.command()
def config():
    """Show the effective configuration (secrets masked)."""
    console.print_json(json.dumps(_load_config().to_display_dict()))


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()

"""Interactive REPL: every line is a template submitted to one shared pool."""

from __future__ import annotations

import asyncio
import platform
import signal
from typing import Annotated

import typer
from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory

from ..config import MuxConfig
from ..core.agent import default_pty_size
from ..core.models import SubmissionHandle
from ..core.protocol import InMemoryHistory
from ..errors import ConfigError
from ..logs import configure_logging
from ..paths import history_file
from ..session import MuxSession
from .formatting import UnitPrinter, _get_version, _markup, print_summary
from .main_cmd import ConfigOption, resolve_config
from .state import app, console
from .theme import THEME

HELP_TEXT = (
    "Enter a command template, e.g. [bold][n=1-3] echo {n}[/bold]\n"
    "Built-ins: [bold]status[/bold], [bold]history[/bold], "
    "[bold]cancel ID[/bold], [bold]exit[/bold]\n"
    "Ctrl+C cancels the running submission."
)


class InteractiveSession:
    """Encapsulates the prompt loop and the shared mux session."""

    def __init__(self, config: MuxConfig, working_dir: str | None = None) -> None:
        self.config = config
        self.working_dir = working_dir
        self.history = InMemoryHistory()
        self.session = MuxSession(config, history=self.history)
        self.session.subscribe(UnitPrinter(console, show_labels=config.output.show_labels))

    async def run(self) -> None:
        """Run the REPL loop until exit, then shut every agent down."""
        prompt_session: PromptSession[str] = PromptSession(
            history=FileHistory(str(history_file())),
        )

        from rich.panel import Panel

        console.print(
            Panel(
                f"[bold]{_markup('mux', THEME.primary)}[/bold] v{_get_version()}\n"
                f"Strategy: {_markup(self.config.output.merge_strategy, THEME.accent)}  "
                f"Max concurrent: {_markup(str(self.config.runner.max_concurrent), THEME.accent)}\n"
                + HELP_TEXT,
                border_style=THEME.border,
            )
        )

        self.session.start()
        try:
            while True:
                try:
                    console.print()
                    line = await prompt_session.prompt_async(
                        HTML(f"<style fg='{THEME.prompt}'><b>mux&gt;</b></style> ")
                    )
                    line = line.strip()
                except (EOFError, KeyboardInterrupt):
                    break

                if not line:
                    continue
                if line.lower() in ("exit", "quit"):
                    break
                if self._handle_builtin(line):
                    continue
                if line.startswith("cancel "):
                    await self._cancel(line)
                    continue

                await self._execute(line)
        finally:
            await self.session.close()
            console.print(_markup("\nGoodbye!", THEME.muted))

    def _handle_builtin(self, line: str) -> bool:
        if line == "help":
            console.print(HELP_TEXT)
            return True
        if line == "status":
            print_summary(self.session.pool, console)
            return True
        if line == "history":
            for command, count in self.history.most_common(20):
                count_text = _markup(str(count).rjust(4), THEME.muted)
                console.print(f"{count_text}  {_markup(command, THEME.primary)}")
            return True
        return False

    async def _cancel(self, line: str) -> None:
        arg = line.split(maxsplit=1)[1]
        try:
            agent_id = int(arg.lstrip("#"))
        except ValueError:
            console.print(_markup(f"Not an agent id: {arg}", THEME.warning))
            return
        if not await self.session.pool.cancel_agent(agent_id):
            console.print(_markup(f"Agent #{agent_id} is not active", THEME.muted))

    async def _execute(self, template: str) -> None:
        """Submit one template and wait for it, with Ctrl+C cancelling it."""
        try:
            handle = self.session.submit(template, cwd=self.working_dir)
        except ConfigError as exc:
            console.print(_markup(f"Error: {exc}", THEME.error))
            return

        loop = asyncio.get_running_loop()
        cancels: list[asyncio.Task[object]] = []

        def on_cancel() -> None:
            console.print(f"\n{_markup('Cancelling...', THEME.warning)}")
            cancels.append(asyncio.ensure_future(self._cancel_submission(handle)))

        def on_resize() -> None:
            self.session.pool.resize_all(*default_pty_size())

        if platform.system() != "Windows":
            loop.add_signal_handler(signal.SIGINT, on_cancel)
            loop.add_signal_handler(signal.SIGWINCH, on_resize)
        try:
            result = await self.session.wait(handle)
        finally:
            if platform.system() != "Windows":
                loop.remove_signal_handler(signal.SIGINT)
                loop.remove_signal_handler(signal.SIGWINCH)

        failed = [aid for aid, status in result.statuses.items() if not status.succeeded]
        summary = f"{len(result.statuses) - len(failed)}/{len(result.statuses)} succeeded"
        console.print(_markup(summary, THEME.success if not failed else THEME.warning))

    async def _cancel_submission(self, handle: SubmissionHandle) -> None:
        await asyncio.gather(
            *(self.session.pool.cancel_agent(aid, wait=False) for aid in handle.agent_ids)
        )


@app.command()
def shell(
    working_dir: Annotated[
        str | None,
        typer.Option("--working-dir", "-w", help="Working directory for every command"),
    ] = None,
    strategy: Annotated[
        str | None,
        typer.Option("--strategy", "-s", help="Output merge strategy: interleaved, line, grouped"),
    ] = None,
    max_concurrent: Annotated[
        int | None,
        typer.Option("--max-concurrent", "-j", help="Maximum commands running at once"),
    ] = None,
    config_path: ConfigOption = None,
) -> None:
    """Start an interactive prompt sharing one pool across submissions."""
    config = resolve_config(config_path, max_concurrent=max_concurrent, strategy=strategy)
    configure_logging(config.logging)
    asyncio.run(InteractiveSession(config, working_dir).run())

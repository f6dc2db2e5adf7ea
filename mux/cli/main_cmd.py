"""`mux run` and `mux expand` commands."""

import asyncio
import logging
import platform
import signal
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv

load_dotenv()

from ..config import MuxConfig, load_config, validate_config
from ..core.agent import default_pty_size
from ..core.expander import expand, parse_template
from ..errors import ConfigError
from ..logs import configure_logging
from ..session import MuxSession
from .formatting import UnitPrinter, _markup, print_summary
from .state import app, console, err_console
from .theme import THEME

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

ConfigOption = Annotated[
    Path | None,
    typer.Option(
        "--config", "-c", help="YAML config file (default: $XDG_CONFIG_HOME/mux/config.yaml)"
    ),
]


def resolve_config(
    config_path: Path | None,
    *,
    max_concurrent: int | None = None,
    strategy: str | None = None,
    grace_period: float | None = None,
    kill_margin: float | None = None,
    no_labels: bool = False,
) -> MuxConfig:
    """Load config and layer command-line overrides on top.

    Raises:
        typer.Exit: With code 2 if the config or an override is invalid.
    """
    try:
        config = load_config(config_path)
        if max_concurrent is not None:
            config.runner.max_concurrent = max_concurrent
        if strategy is not None:
            config.output.merge_strategy = strategy.lower()
        if grace_period is not None:
            config.runner.grace_period = grace_period
        if kill_margin is not None:
            config.runner.kill_margin = kill_margin
        if no_labels:
            config.output.show_labels = False
        validate_config(config)
    except (ConfigError, FileNotFoundError) as exc:
        err_console.print(_markup(f"Error: {exc}", THEME.error))
        raise typer.Exit(EXIT_CONFIG_ERROR) from exc
    return config


async def run_template(template: str, config: MuxConfig, working_dir: str | None = None) -> int:
    """Run one template to completion, streaming merged output.

    Returns the process exit code: 0 if every agent completed with 0,
    1 if any did not, 130 if interrupted.
    """
    loop = asyncio.get_running_loop()
    interrupted = False
    shutdown_tasks: list[asyncio.Task[object]] = []

    async with MuxSession(config) as session:
        session.subscribe(UnitPrinter(console, show_labels=config.output.show_labels))
        handle = session.submit(template, cwd=working_dir)
        logger.info("Running %d command(s) from %r", len(handle), template)

        def on_interrupt() -> None:
            nonlocal interrupted
            if interrupted:
                return
            interrupted = True
            console.print(f"\n{_markup('Stopping all commands...', THEME.warning)}")
            shutdown_tasks.append(asyncio.ensure_future(session.shutdown()))

        def on_resize() -> None:
            session.pool.resize_all(*default_pty_size())

        if platform.system() != "Windows":
            loop.add_signal_handler(signal.SIGINT, on_interrupt)
            loop.add_signal_handler(signal.SIGWINCH, on_resize)
        try:
            result = await session.wait(handle)
        finally:
            if platform.system() != "Windows":
                loop.remove_signal_handler(signal.SIGINT)
                loop.remove_signal_handler(signal.SIGWINCH)

        console.print()
        print_summary(session.pool, console)

    if interrupted:
        return EXIT_INTERRUPTED
    return 0 if result.succeeded else 1


@app.command()
def run(
    template: Annotated[
        str,
        typer.Argument(help="Command template, e.g. '[n=1-4] ./job {n}'"),
    ],
    max_concurrent: Annotated[
        int | None,
        typer.Option("--max-concurrent", "-j", help="Maximum commands running at once"),
    ] = None,
    strategy: Annotated[
        str | None,
        typer.Option(
            "--strategy",
            "-s",
            help="Output merge strategy: interleaved, line, grouped",
        ),
    ] = None,
    grace_period: Annotated[
        float | None,
        typer.Option("--grace-period", help="Seconds between SIGTERM and SIGKILL on cancel"),
    ] = None,
    kill_margin: Annotated[
        float | None,
        typer.Option("--kill-margin", help="Seconds allowed for SIGKILL to take effect"),
    ] = None,
    working_dir: Annotated[
        str | None,
        typer.Option("--working-dir", "-w", help="Working directory for every command"),
    ] = None,
    no_labels: Annotated[
        bool,
        typer.Option("--no-labels", help="Do not prefix output lines with agent labels"),
    ] = False,
    config_path: ConfigOption = None,
) -> None:
    """Expand TEMPLATE, run every command in parallel and merge their output."""
    config = resolve_config(
        config_path,
        max_concurrent=max_concurrent,
        strategy=strategy,
        grace_period=grace_period,
        kill_margin=kill_margin,
        no_labels=no_labels,
    )
    configure_logging(config.logging)

    if working_dir is not None and not Path(working_dir).is_dir():
        err_console.print(_markup(f"Error: working directory not found: {working_dir}", THEME.error))
        raise typer.Exit(EXIT_CONFIG_ERROR)

    try:
        code = asyncio.run(run_template(template, config, working_dir))
    except ConfigError as exc:
        err_console.print(_markup(f"Error: {exc}", THEME.error))
        raise typer.Exit(EXIT_CONFIG_ERROR) from exc
    raise typer.Exit(code)


@app.command(name="expand")
def expand_cmd(
    template: Annotated[str, typer.Argument(help="Command template to expand")],
) -> None:
    """Print the commands TEMPLATE expands to, without running them."""
    if not template.strip():
        err_console.print(_markup("Error: Empty command", THEME.error))
        raise typer.Exit(EXIT_CONFIG_ERROR)
    try:
        pairs = expand(parse_template(template))
    except ConfigError as exc:
        err_console.print(_markup(f"Error: {exc}", THEME.error))
        raise typer.Exit(EXIT_CONFIG_ERROR) from exc

    for command, label in pairs:
        if label:
            console.print(f"{_markup(label, THEME.accent)} {_markup(command, THEME.primary)}")
        else:
            console.print(_markup(command, THEME.primary))
    console.print(_markup(f"{len(pairs)} command(s)", THEME.muted))


# Typer treats a single command as the whole app; keep subcommands explicit.
@app.callback()
def main() -> None:
    """mux: parallel shell commands with merged pty output."""

"""CLI package for mux."""

from .formatting import UnitPrinter, print_summary
from .interactive import InteractiveSession
from .main_cmd import run_template
from .state import app

# Import subcommand modules so their @app.command() decorators register
from . import main_cmd as _main_cmd  # noqa: F401
from . import interactive as _interactive  # noqa: F401


def cli() -> None:
    """CLI entrypoint."""
    app(prog_name="mux")


__all__ = [
    "InteractiveSession",
    "UnitPrinter",
    "app",
    "cli",
    "print_summary",
    "run_template",
]


if __name__ == "__main__":
    cli()

"""Shared CLI state: console, app, constants."""

from __future__ import annotations

import typer
from rich.console import Console

# Rich console for all output
console = Console()

# Errors go to stderr so merged output on stdout stays clean
err_console = Console(stderr=True)

# Typer app
app = typer.Typer(
    name="mux",
    help="Run many shell commands at once under ptys and merge their output.",
    epilog=(
        "Examples:\n"
        "  mux run 'echo hello'\n"
        "  mux run '[n=1-4] sleep {n} && echo done {n}'\n"
        "  mux run --strategy grouped '[host=web1,web2] ssh {host} uptime'\n"
        "  mux run '[shard=01-16 region=a,b,c,d,e,f,g,h,i,j,k,l,m,n,o,p] ./job {shard} {region}'\n"
        "  mux expand '[env=dev,prod] [n=1-2] deploy {env} {n}'\n"
        "  mux shell"
    ),
    add_completion=False,
)

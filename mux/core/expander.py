"""Template expansion into concrete command instances.

Syntax::

    [name=range] ...more blocks... command with {name} placeholders

Range forms:

    [shard=1-64]        numeric: "1", "2", ..., "64"
    [shard=01-64]       zero-padded: "01", "02", ..., "64"
    [region=east,west]  list: "east", "west"
    [env=prod]          single value

Separate blocks are cross-producted, the first block varying slowest.
Several ``name=range`` parts inside one block are zipped and must have the
same length::

    [shard=1-3] [region=a,b] cmd      -> 6 commands (1,a), (1,b), (2,a), ...
    [shard=1-3 region=a,b,c] cmd      -> 3 commands (1,a), (2,b), (3,c)

``{}`` stands for the value when exactly one variable is declared. ``${VAR}``
is shell syntax and is never substituted.
"""

from __future__ import annotations

import itertools
import os
import re
from dataclasses import dataclass, field

from ..errors import ConfigError
from .models import CommandInstance

NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
DECLARATION_PATTERN = re.compile(r"^\s*[A-Za-z_][A-Za-z0-9_]*=")
NUMERIC_RANGE_PATTERN = re.compile(r"^(\d+)-(\d+)$")
PLACEHOLDER_PATTERN = re.compile(r"(?<!\$)\{([A-Za-z_][A-Za-z0-9_]*)?\}")


@dataclass
class ParamDef:
    """A single named parameter with its expanded values."""

    name: str
    values: list[str]


@dataclass
class ParamGroup:
    """Parameters declared in one ``[...]`` block; zipped together."""

    params: list[ParamDef]

    def __len__(self) -> int:
        return len(self.params[0].values)

    def rows(self) -> list[list[tuple[str, str]]]:
        return [[(p.name, p.values[i]) for p in self.params] for i in range(len(self))]


@dataclass
class ParsedTemplate:
    """A template split into its range declarations and command body."""

    body: str
    groups: list[ParamGroup] = field(default_factory=list)

    @property
    def is_parallel(self) -> bool:
        return bool(self.groups)

    @property
    def variables(self) -> list[str]:
        return [p.name for group in self.groups for p in group.params]

    @property
    def count(self) -> int:
        total = 1
        for group in self.groups:
            total *= len(group)
        return total


def parse_range(name: str, rng: str) -> list[str]:
    """Parse the right-hand side of ``name=range`` into its values."""
    if "," in rng:
        values = [v.strip() for v in rng.split(",")]
        if any(not v for v in values):
            raise ConfigError(f"Empty value in list for '{name}': {rng!r}")
        return values

    if "-" in rng:
        match = NUMERIC_RANGE_PATTERN.match(rng)
        if not match:
            raise ConfigError(f"Range for '{name}' must have numeric bounds: {rng!r}")
        start_str, end_str = match.groups()
        start, end = int(start_str), int(end_str)
        if start > end:
            raise ConfigError(f"Range for '{name}' has start > end: {rng!r}")
        # Leading zero on the start bound turns on zero-padding
        width = max(len(start_str), len(end_str)) if len(start_str) > 1 and start_str[0] == "0" else 0
        return [str(n).zfill(width) for n in range(start, end + 1)]

    if not rng:
        raise ConfigError(f"Missing value for '{name}'")
    return [rng]


def _parse_block(inner: str) -> ParamGroup:
    params: list[ParamDef] = []
    for part in inner.split():
        name, sep, rng = part.partition("=")
        if not sep:
            raise ConfigError(f"Expected name=range in block, got {part!r}")
        if not NAME_PATTERN.match(name):
            raise ConfigError(f"Invalid variable name {name!r}")
        params.append(ParamDef(name=name, values=parse_range(name, rng)))

    if not params:
        raise ConfigError("Empty range block")

    lengths = {len(p.values) for p in params}
    if len(lengths) > 1:
        detail = ", ".join(f"{p.name}={len(p.values)}" for p in params)
        raise ConfigError(f"Zipped ranges must have the same length ({detail})")
    return ParamGroup(params=params)


def parse_template(template: str) -> ParsedTemplate:
    """Split leading ``[...]`` declarations from the command body.

    A leading bracket whose content does not start with ``name=`` is treated
    as part of the command (e.g. ``[ -f x ] && ...``).

    Raises:
        ConfigError: If a declaration block or the resulting template is malformed.
    """
    remaining = template.strip()
    groups: list[ParamGroup] = []

    while remaining.startswith("[") and DECLARATION_PATTERN.match(remaining[1:]):
        close = remaining.find("]")
        if close == -1:
            raise ConfigError(f"Unterminated range block in {template!r}")
        groups.append(_parse_block(remaining[1:close]))
        remaining = remaining[close + 1 :].lstrip()

    if not groups:
        return ParsedTemplate(body=template.strip())

    if not remaining:
        raise ConfigError("Template declares ranges but has no command")

    seen: set[str] = set()
    for group in groups:
        for param in group.params:
            if param.name in seen:
                raise ConfigError(f"Variable '{param.name}' declared more than once")
            seen.add(param.name)

    parsed = ParsedTemplate(body=remaining, groups=groups)
    _check_placeholders(parsed)
    return parsed


def _check_placeholders(parsed: ParsedTemplate) -> None:
    declared = set(parsed.variables)
    unknown = sorted(
        {
            m.group(1)
            for m in PLACEHOLDER_PATTERN.finditer(parsed.body)
            if m.group(1) is not None and m.group(1) not in declared
        }
    )
    if unknown:
        raise ConfigError(f"Placeholder(s) with no declared range: {', '.join(unknown)}")


def _substitute(body: str, assignments: dict[str, str], shorthand: str | None) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name is None:
            return shorthand if shorthand is not None else match.group(0)
        return assignments[name]

    return PLACEHOLDER_PATTERN.sub(replace, body)


def expand(parsed: ParsedTemplate) -> list[tuple[str, str]]:
    """Return ``(command, label)`` pairs for every combination, in order."""
    if not parsed.groups:
        return [(parsed.body, "")]

    single = len(parsed.variables) == 1
    results: list[tuple[str, str]] = []
    for combo in itertools.product(*(group.rows() for group in parsed.groups)):
        assignments = [pair for row in combo for pair in row]
        values = dict(assignments)
        shorthand = assignments[0][1] if single else None
        command = _substitute(parsed.body, values, shorthand)
        label = "".join(f"[{name}={value}]" for name, value in assignments)
        results.append((command, label))
    return results


def expand_template(
    template: str,
    cwd: str | None = None,
    shell: str = "sh",
) -> list[CommandInstance]:
    """Expand a template into command instances (all-or-nothing).

    Args:
        template: Submission text, optionally prefixed with range blocks.
        cwd: Working directory for every instance. Defaults to the current directory.
        shell: Shell used to run each command via ``<shell> -c``.

    Raises:
        ConfigError: If the template is malformed. No instances are produced.
    """
    if not template.strip():
        raise ConfigError("Empty command")
    working_dir = cwd or os.getcwd()
    return [
        CommandInstance.shell(command, working_dir, label=label, shell=shell)
        for command, label in expand(parse_template(template))
    ]

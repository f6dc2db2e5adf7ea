"""Centralized CLI theme tokens."""

from dataclasses import dataclass


@dataclass(frozen=True)
class CliTheme:
    """Semantic Rich color tokens for CLI output."""

    primary: str = "#E6EDF3"
    muted: str = "#7F848E"
    accent: str = "#61AFEF"
    success: str = "#98C379"
    warning: str = "#E5C07B"
    error: str = "#E06C75"
    border: str = "#3E4451"
    prompt: str = "#56B6C2"
    # Label colors, cycled by agent id
    labels: tuple[str, ...] = ("#61AFEF", "#98C379", "#E5C07B", "#C678DD", "#56B6C2", "#D19A66")


THEME = CliTheme()

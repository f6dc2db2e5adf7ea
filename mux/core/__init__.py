"""Execution core: expander, agents, pool and output merger."""

from __future__ import annotations

from .agent import Agent
from .cancellation import CancellationToken
from .expander import expand_template, parse_template
from .merger import OutputMerger, create_channel, split_incomplete_tail
from .models import (
    AgentId,
    AgentStatus,
    CommandInstance,
    MergedUnit,
    MergeStrategy,
    OutputMessage,
    StatusKind,
    StreamTag,
    SubmissionHandle,
    UnitKind,
)
from .pool import AgentInfo, AgentPool
from .protocol import HistorySink, InMemoryHistory, StatusListener, UnitHandler

__all__ = [
    "Agent",
    "AgentId",
    "AgentInfo",
    "AgentPool",
    "AgentStatus",
    "CancellationToken",
    "CommandInstance",
    "HistorySink",
    "InMemoryHistory",
    "MergeStrategy",
    "MergedUnit",
    "OutputMerger",
    "OutputMessage",
    "StatusKind",
    "StatusListener",
    "StreamTag",
    "SubmissionHandle",
    "UnitHandler",
    "UnitKind",
    "create_channel",
    "expand_template",
    "parse_template",
    "split_incomplete_tail",
]

"""Tests for the status model and messages."""

import pytest

from mux.core.models import (
    AgentStatus,
    MergedUnit,
    OutputMessage,
    StatusKind,
    StreamTag,
    UnitKind,
)


@pytest.mark.parametrize(
    "status, text, terminal",
    [
        (AgentStatus.starting(), "queued", False),
        (AgentStatus.running(), "started", False),
        (AgentStatus.completed(0), "completed", True),
        (AgentStatus.completed(3), "exited with code 3", True),
        (AgentStatus.failed("boom"), "error: boom", True),
        (AgentStatus.terminated(), "terminated", True),
    ],
)
def test_describe_and_terminal(status, text, terminal):
    assert status.describe() == text
    assert status.is_terminal is terminal


def test_succeeded_only_for_zero_exit():
    assert AgentStatus.completed(0).succeeded
    assert not AgentStatus.completed(1).succeeded
    assert not AgentStatus.terminated().succeeded
    assert not AgentStatus.failed("x").succeeded


def test_status_is_immutable():
    status = AgentStatus.completed(0)
    with pytest.raises(AttributeError):
        status.kind = StatusKind.FAILED  # type: ignore[misc]


def test_status_change_message_carries_description():
    msg = OutputMessage.status_change(4, 9, AgentStatus.completed(2), "[n=1]")
    assert msg.stream == StreamTag.STATUS
    assert msg.payload == b"exited with code 2"
    assert msg.is_terminal
    assert msg.label == "[n=1]"


def test_output_message_is_not_terminal():
    msg = OutputMessage.output(1, 0, StreamTag.STDOUT, b"hi")
    assert not msg.is_terminal


def test_merged_unit_text_replaces_invalid_utf8():
    unit = MergedUnit(index=0, ingress=0, agent_id=1, kind=UnitKind.CHUNK, payload=b"ok\xff")
    assert unit.text == "ok\ufffd"

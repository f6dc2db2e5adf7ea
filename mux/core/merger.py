"""Output merger: linearizes many agents' messages into one view.

The merger is the single consumer of the shared channel. Every message gets
the next ingress number as it is taken off the channel; that number, not the
message timestamp, orders units across agents. Per-agent order is inherited
from the channel since each agent puts its messages in sequence order.

Strategies:

- ``interleaved``: chunks pass through in ingress order. A chunk's trailing
  bytes that form an unfinished escape sequence or UTF-8 character are held
  back and prepended to that agent/stream's next chunk.
- ``line``: one unit per complete line; the unterminated remainder is flushed
  once when the agent reaches a terminal state.
- ``grouped``: one block per agent, emitted when it reaches a terminal state,
  in completion order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from .models import (
    AgentId,
    AgentStatus,
    MergedUnit,
    MergeStrategy,
    OutputMessage,
    StreamTag,
    UnitKind,
)
from .protocol import UnitHandler

logger = logging.getLogger(__name__)

ESC = 0x1B
BEL = 0x07
# Longest tail held back waiting for an escape sequence to finish
MAX_HELD_ESCAPE = 512


@dataclass(frozen=True)
class Emission:
    """A unit produced by a strategy, before the merger numbers it."""

    agent_id: AgentId
    kind: UnitKind
    payload: bytes
    stream: StreamTag | None = None
    label: str = ""
    status: AgentStatus | None = None
    terminated_line: bool = True
    segments: tuple[tuple[StreamTag, bytes], ...] = ()


def _status_emission(message: OutputMessage) -> Emission:
    return Emission(
        agent_id=message.agent_id,
        kind=UnitKind.STATUS,
        payload=message.payload,
        stream=StreamTag.STATUS,
        label=message.label,
        status=message.status,
    )


def _escape_complete(seq: bytes) -> bool:
    """Return True if ``seq`` (starting with ESC) is a finished escape sequence."""
    if len(seq) < 2:
        return False
    kind = seq[1]
    if kind == ord("["):
        # CSI: parameters/intermediates then one final byte in 0x40-0x7E
        return any(0x40 <= b <= 0x7E for b in seq[2:])
    if kind in (ord("]"), ord("P"), ord("_"), ord("^")):
        # OSC/DCS/APC/PM: terminated by BEL or ST (ESC \)
        body = seq[2:]
        return BEL in body or b"\x1b\\" in body
    if 0x20 <= kind <= 0x2F:
        # nF escape: intermediates then a final byte
        return any(0x30 <= b <= 0x7E for b in seq[2:])
    return True


def _incomplete_utf8_tail(data: bytes) -> int:
    """Number of trailing bytes that begin a multi-byte character not yet finished."""
    for back in range(1, min(4, len(data)) + 1):
        byte = data[-back]
        if byte & 0xC0 == 0x80:
            continue
        if byte & 0xE0 == 0xC0:
            need = 2
        elif byte & 0xF0 == 0xE0:
            need = 3
        elif byte & 0xF8 == 0xF0:
            need = 4
        else:
            return 0
        return back if back < need else 0
    return 0


def split_incomplete_tail(data: bytes) -> tuple[bytes, bytes]:
    """Split ``data`` into ``(ready, held)`` where ``held`` is an unfinished tail."""
    esc = data.rfind(bytes([ESC]), max(0, len(data) - MAX_HELD_ESCAPE))
    if esc != -1 and not _escape_complete(data[esc:]):
        return data[:esc], data[esc:]
    held = _incomplete_utf8_tail(data)
    if held:
        return data[:-held], data[-held:]
    return data, b""


class Strategy(Protocol):
    def feed(self, message: OutputMessage) -> list[Emission]: ...


class InterleavedStrategy:
    """Pass-through in ingress order with escape/UTF-8 reassembly."""

    def __init__(self) -> None:
        self._held: dict[tuple[AgentId, StreamTag], bytes] = {}

    def feed(self, message: OutputMessage) -> list[Emission]:
        if message.stream == StreamTag.STATUS:
            emissions = []
            if message.is_terminal:
                emissions.extend(self._flush(message.agent_id, message.label))
            emissions.append(_status_emission(message))
            return emissions

        key = (message.agent_id, message.stream)
        data = self._held.pop(key, b"") + message.payload
        ready, held = split_incomplete_tail(data)
        if held:
            self._held[key] = held
        if not ready:
            return []
        return [
            Emission(
                agent_id=message.agent_id,
                kind=UnitKind.CHUNK,
                payload=ready,
                stream=message.stream,
                label=message.label,
            )
        ]

    def _flush(self, agent_id: AgentId, label: str) -> list[Emission]:
        emissions = []
        for stream in (StreamTag.STDOUT, StreamTag.STDERR):
            held = self._held.pop((agent_id, stream), b"")
            if held:
                emissions.append(
                    Emission(agent_id, UnitKind.CHUNK, held, stream=stream, label=label)
                )
        return emissions


class LineBufferedStrategy:
    """One unit per complete line; remainder flushed at the agent's terminal status."""

    def __init__(self) -> None:
        self._partial: dict[tuple[AgentId, StreamTag], bytearray] = {}

    def feed(self, message: OutputMessage) -> list[Emission]:
        if message.stream == StreamTag.STATUS:
            emissions = []
            if message.is_terminal:
                emissions.extend(self._flush(message.agent_id, message.label))
            emissions.append(_status_emission(message))
            return emissions

        key = (message.agent_id, message.stream)
        buffer = self._partial.setdefault(key, bytearray())
        buffer.extend(message.payload)

        emissions = []
        while True:
            newline = buffer.find(b"\n")
            if newline == -1:
                break
            line = bytes(buffer[:newline]).rstrip(b"\r")
            del buffer[: newline + 1]
            emissions.append(
                Emission(
                    agent_id=message.agent_id,
                    kind=UnitKind.LINE,
                    payload=line,
                    stream=message.stream,
                    label=message.label,
                )
            )
        return emissions

    def _flush(self, agent_id: AgentId, label: str) -> list[Emission]:
        emissions = []
        for stream in (StreamTag.STDOUT, StreamTag.STDERR):
            remainder = bytes(self._partial.pop((agent_id, stream), b"")).rstrip(b"\r")
            if remainder:
                emissions.append(
                    Emission(
                        agent_id=agent_id,
                        kind=UnitKind.LINE,
                        payload=remainder,
                        stream=stream,
                        label=label,
                        terminated_line=False,
                    )
                )
        return emissions


class GroupedStrategy:
    """Buffers each agent's output and emits it as one block on completion.

    The block payload is every output byte in sequence order; ``segments``
    keeps the same bytes split into runs of one stream each.
    """

    def __init__(self) -> None:
        self._segments: dict[AgentId, list[tuple[StreamTag, bytearray]]] = {}

    def feed(self, message: OutputMessage) -> list[Emission]:
        segments = self._segments.setdefault(message.agent_id, [])
        if message.stream != StreamTag.STATUS:
            if segments and segments[-1][0] == message.stream:
                segments[-1][1].extend(message.payload)
            else:
                segments.append((message.stream, bytearray(message.payload)))
            return []
        if not message.is_terminal:
            return []
        del self._segments[message.agent_id]
        runs = tuple((stream, bytes(data)) for stream, data in segments if data)
        return [
            Emission(
                agent_id=message.agent_id,
                kind=UnitKind.BLOCK,
                payload=b"".join(data for _, data in runs),
                label=message.label,
                status=message.status,
                segments=runs,
            )
        ]


def build_strategy(strategy: MergeStrategy | str) -> Strategy:
    strategy = MergeStrategy(strategy)
    if strategy == MergeStrategy.INTERLEAVED:
        return InterleavedStrategy()
    if strategy == MergeStrategy.LINE:
        return LineBufferedStrategy()
    if strategy == MergeStrategy.GROUPED:
        return GroupedStrategy()
    raise AssertionError(f"unhandled merge strategy: {strategy!r}")


class OutputMerger:
    """Single consumer that turns the shared channel into an ordered view."""

    def __init__(
        self,
        channel: asyncio.Queue[OutputMessage | None],
        strategy: MergeStrategy | str = MergeStrategy.INTERLEAVED,
    ) -> None:
        self.strategy = MergeStrategy(strategy)
        self._channel = channel
        self._impl = build_strategy(self.strategy)
        self._ingress = 0
        self._view: list[MergedUnit] = []
        self._subscribers: list[UnitHandler] = []
        self._expected_seq: dict[AgentId, int] = {}

    @property
    def view(self) -> tuple[MergedUnit, ...]:
        return tuple(self._view)

    @property
    def ingress_count(self) -> int:
        return self._ingress

    def subscribe(self, handler: UnitHandler) -> None:
        self._subscribers.append(handler)

    def units_for(self, agent_id: AgentId) -> list[MergedUnit]:
        return [u for u in self._view if u.agent_id == agent_id]

    def feed(self, message: OutputMessage) -> list[MergedUnit]:
        """Process one message synchronously; return the units it produced."""
        ingress = self._ingress
        self._ingress += 1

        expected = self._expected_seq.get(message.agent_id, 0)
        if message.seq != expected:
            logger.warning(
                "Agent #%d message out of sequence: got %d, expected %d",
                message.agent_id,
                message.seq,
                expected,
            )
        self._expected_seq[message.agent_id] = message.seq + 1

        units = []
        for emission in self._impl.feed(message):
            unit = MergedUnit(
                index=len(self._view),
                ingress=ingress,
                agent_id=emission.agent_id,
                kind=emission.kind,
                payload=emission.payload,
                stream=emission.stream,
                label=emission.label,
                status=emission.status,
                terminated_line=emission.terminated_line,
                segments=emission.segments,
            )
            self._view.append(unit)
            units.append(unit)
        return units

    async def run(self) -> None:
        """Consume the channel until ``close()``'s sentinel is reached."""
        while True:
            message = await self._channel.get()
            try:
                if message is None:
                    return
                for unit in self.feed(message):
                    await self._dispatch(unit)
            finally:
                self._channel.task_done()

    async def close(self) -> None:
        """Stop ``run()`` after everything already on the channel is merged."""
        await self._channel.put(None)

    async def _dispatch(self, unit: MergedUnit) -> None:
        for handler in self._subscribers:
            try:
                maybe_awaitable = handler(unit)
                if maybe_awaitable is not None:
                    await maybe_awaitable
            except Exception:
                # Subscribers never stop the merger
                logger.exception("Subscriber failed on unit %d", unit.index)


def create_channel(capacity: int = 256) -> asyncio.Queue[OutputMessage | None]:
    """Bounded channel shared by every agent of a pool and its merger."""
    return asyncio.Queue(maxsize=capacity)

"""Subtest progress events extracted from a test's output.

A test reports its progress either with textual markers on stdout or with
packets on the comms socket. Both are decoded by an ``EventSource`` into the
same ``SubtestEvent`` values so the output monitor keeps a single piece of
bookkeeping for subtest boundaries.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from dutrunner.comms import PacketType, RunnerPacket, decode_datagram

STARTING_SUBTEST = "Starting subtest: "
STARTING_DYNAMIC_SUBTEST = "Starting dynamic subtest: "
SUBTEST_RESULT = "Subtest "
DYNAMIC_SUBTEST_RESULT = "Dynamic subtest "


class EventKind(StrEnum):
    SUBTEST_START = "subtest_start"
    SUBTEST_RESULT = "subtest_result"
    DYNAMIC_SUBTEST_START = "dynamic_subtest_start"
    DYNAMIC_SUBTEST_RESULT = "dynamic_subtest_result"
    LOG_LINE = "log_line"


class SubtestEvent(BaseModel):
    """One decoded progress event.

    Attributes:
        kind: What happened.
        name: Subtest name for start/result events.
        result: Result string for result events.
        time_used: Seconds used, as reported by the test.
        line: The raw text line that produced the event, when textual.
    """

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    name: str | None = None
    result: str | None = None
    time_used: str | None = None
    line: str | None = None

    @property
    def is_start(self) -> bool:
        return self.kind in (EventKind.SUBTEST_START, EventKind.DYNAMIC_SUBTEST_START)


@runtime_checkable
class EventSource(Protocol):
    """Anything that turns received output into subtest events."""

    def feed(self, data: bytes) -> list[SubtestEvent]: ...  # noqa: D102


def _parse_result(line: str, prefix: str) -> tuple[str, str, str | None] | None:
    """Split ``<prefix><name>: <RESULT> (<time>s)`` into its parts."""
    rest = line[len(prefix) :]
    name, sep, tail = rest.partition(":")
    if not sep:
        return None
    tail = tail.strip()
    result, _, timing = tail.partition(" ")
    time_used = None
    timing = timing.strip()
    if timing.startswith("(") and timing.endswith("s)"):
        time_used = timing[1:-2]
    return name, result, time_used


class TextEventSource:
    """Line-oriented scanner for the textual stdout markers.

    Bytes are buffered until a full line is available; partial lines are
    kept for the next ``feed``.
    """

    def __init__(self) -> None:
        self._pending = b""

    def feed(self, data: bytes) -> list[SubtestEvent]:
        """Consume raw stdout bytes and return the events of complete lines."""
        self._pending += data
        *lines, self._pending = self._pending.split(b"\n")
        events: list[SubtestEvent] = []
        for raw in lines:
            event = self.parse_line(raw.decode("utf-8", errors="replace"))
            if event is not None:
                events.append(event)
        return events

    @staticmethod
    def parse_line(line: str) -> SubtestEvent | None:
        """Classify a single stdout line, returning ``None`` for plain output."""
        if line.startswith(STARTING_DYNAMIC_SUBTEST):
            name = line[len(STARTING_DYNAMIC_SUBTEST) :]
            if name:
                return SubtestEvent(kind=EventKind.DYNAMIC_SUBTEST_START, name=name, line=line)
            return None
        if line.startswith(STARTING_SUBTEST):
            name = line[len(STARTING_SUBTEST) :]
            if name:
                return SubtestEvent(kind=EventKind.SUBTEST_START, name=name, line=line)
            return None
        for prefix, kind in (
            (DYNAMIC_SUBTEST_RESULT, EventKind.DYNAMIC_SUBTEST_RESULT),
            (SUBTEST_RESULT, EventKind.SUBTEST_RESULT),
        ):
            if line.startswith(prefix) and len(line) > len(prefix):
                parsed = _parse_result(line, prefix)
                if parsed is None:
                    return None
                name, result, time_used = parsed
                return SubtestEvent(
                    kind=kind, name=name, result=result, time_used=time_used, line=line
                )
        return None


_PACKET_EVENTS: dict[PacketType, EventKind] = {
    PacketType.SUBTEST_START: EventKind.SUBTEST_START,
    PacketType.SUBTEST_RESULT: EventKind.SUBTEST_RESULT,
    PacketType.DYNAMIC_SUBTEST_START: EventKind.DYNAMIC_SUBTEST_START,
    PacketType.DYNAMIC_SUBTEST_RESULT: EventKind.DYNAMIC_SUBTEST_RESULT,
    PacketType.LOG: EventKind.LOG_LINE,
}


class PacketEventSource:
    """Event view over packets received on the comms socket.

    The socket is datagram based, so decoding happens per datagram in the
    monitor; ``from_packet`` maps an already decoded packet.
    """

    def feed(self, data: bytes) -> list[SubtestEvent]:
        packet = decode_datagram(data)
        if packet is None:
            return []
        event = self.from_packet(packet)
        return [event] if event is not None else []

    @staticmethod
    def from_packet(packet: RunnerPacket) -> SubtestEvent | None:
        kind = _PACKET_EVENTS.get(packet.type)
        if kind is None:
            return None
        if kind == EventKind.LOG_LINE:
            return SubtestEvent(kind=kind, line=packet.text)
        return SubtestEvent(
            kind=kind, name=packet.name, result=packet.result, time_used=packet.time_used
        )

"""Wire protocol between the supervisor and test processes.

Tests that opt in report structured events over an inherited datagram
socket. Every packet is a little-endian header (``size``, ``type``,
``sender_pid``, ``sender_tid``) followed by a type-specific body of
NUL-terminated UTF-8 strings and 32-bit integers; ``size`` covers header and
body. In the per-job ``comms`` dump each packet is preceded by a 4-byte
canary so a corrupted or truncated dump can be detected.
"""

from __future__ import annotations

from collections.abc import Iterator
from enum import IntEnum
import logging
import os
import struct
from typing import BinaryIO

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

CANARY = 0x49475443
_CANARY = struct.Struct("<I")
_HEADER = struct.Struct("<IIii")
_INT = struct.Struct("<i")

HEADER_SIZE = _HEADER.size
CANARY_SIZE = _CANARY.size


class PacketType(IntEnum):
    """Packet kinds understood by the supervisor."""

    INVALID = 0
    LOG = 1
    EXEC = 2
    EXIT = 3
    SUBTEST_START = 4
    SUBTEST_RESULT = 5
    DYNAMIC_SUBTEST_START = 6
    DYNAMIC_SUBTEST_RESULT = 7
    VERSION_STRING = 8
    RESULT_OVERRIDE = 9


class CommsParseError(Exception):
    """A ``comms`` dump could not be parsed.

    Attributes:
        offset: Byte offset of the first unparseable data.
    """

    def __init__(self, message: str, *, offset: int) -> None:
        super().__init__(message)
        self.offset = offset


class RunnerPacket(BaseModel):
    """A decoded wire packet.

    Only the fields relevant to ``type`` are populated; ``strings`` holds the
    raw string fields in wire order for types that carry free-form lists
    (``EXEC``).

    Attributes:
        type: Packet kind.
        sender_pid: PID of the sending process.
        sender_tid: Thread ID of the sending thread.
        stream: Output stream number for ``LOG`` packets.
        exit_code: Exit status for ``EXIT`` packets.
        name: Subtest name for start/result packets.
        result: Result string for result and override packets.
        time_used: Seconds used, as sent.
        reason: Optional failure reason for result packets.
        text: Payload text for ``LOG`` and ``VERSION_STRING`` packets.
        argv: Argument vector for ``EXEC`` packets.
    """

    model_config = ConfigDict(frozen=True)

    type: PacketType
    sender_pid: int = 0
    sender_tid: int = 0
    stream: int | None = None
    exit_code: int | None = None
    name: str | None = None
    result: str | None = None
    time_used: str | None = None
    reason: str | None = None
    text: str | None = None
    argv: tuple[str, ...] | None = None


# ---------------------------------------------------------------------------
# Packet constructors
# ---------------------------------------------------------------------------


def _sender() -> dict[str, int]:
    return {"sender_pid": os.getpid(), "sender_tid": os.getpid()}


def log_packet(stream: int, text: str) -> RunnerPacket:
    """Build a ``LOG`` packet for output *stream* (1 = stdout, 2 = stderr)."""
    return RunnerPacket(type=PacketType.LOG, stream=stream, text=text, **_sender())


def exec_packet(argv: list[str]) -> RunnerPacket:
    """Build the ``EXEC`` packet recording how a test was launched."""
    return RunnerPacket(type=PacketType.EXEC, argv=tuple(argv), **_sender())


def exit_packet(exit_code: int, time_used: str) -> RunnerPacket:
    return RunnerPacket(
        type=PacketType.EXIT, exit_code=exit_code, time_used=time_used, **_sender()
    )


def subtest_start_packet(name: str) -> RunnerPacket:
    return RunnerPacket(type=PacketType.SUBTEST_START, name=name, **_sender())


def subtest_result_packet(
    name: str, result: str, time_used: str, reason: str | None = None
) -> RunnerPacket:
    return RunnerPacket(
        type=PacketType.SUBTEST_RESULT,
        name=name,
        result=result,
        time_used=time_used,
        reason=reason,
        **_sender(),
    )


def dynamic_subtest_start_packet(name: str) -> RunnerPacket:
    return RunnerPacket(type=PacketType.DYNAMIC_SUBTEST_START, name=name, **_sender())


def dynamic_subtest_result_packet(
    name: str, result: str, time_used: str, reason: str | None = None
) -> RunnerPacket:
    return RunnerPacket(
        type=PacketType.DYNAMIC_SUBTEST_RESULT,
        name=name,
        result=result,
        time_used=time_used,
        reason=reason,
        **_sender(),
    )


def version_string_packet(text: str) -> RunnerPacket:
    return RunnerPacket(type=PacketType.VERSION_STRING, text=text, **_sender())


def result_override_packet(result: str) -> RunnerPacket:
    """Build a ``RESULT_OVERRIDE`` packet forcing the job's result."""
    return RunnerPacket(type=PacketType.RESULT_OVERRIDE, result=result, **_sender())


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _cstr(value: str | None) -> bytes:
    return (value or "").encode("utf-8") + b"\0"


def _encode_body(packet: RunnerPacket) -> bytes:
    match packet.type:
        case PacketType.LOG:
            return _INT.pack(packet.stream or 0) + _cstr(packet.text)
        case PacketType.EXEC:
            return b"".join(_cstr(arg) for arg in packet.argv or ())
        case PacketType.EXIT:
            return _INT.pack(packet.exit_code or 0) + _cstr(packet.time_used)
        case PacketType.SUBTEST_START | PacketType.DYNAMIC_SUBTEST_START:
            return _cstr(packet.name)
        case PacketType.SUBTEST_RESULT | PacketType.DYNAMIC_SUBTEST_RESULT:
            body = _cstr(packet.name) + _cstr(packet.result) + _cstr(packet.time_used)
            if packet.reason is not None:
                body += _cstr(packet.reason)
            return body
        case PacketType.VERSION_STRING:
            return _cstr(packet.text)
        case PacketType.RESULT_OVERRIDE:
            return _cstr(packet.result)
        case _:
            msg = f"Cannot encode packet of type {packet.type!r}"
            raise ValueError(msg)


def encode(packet: RunnerPacket) -> bytes:
    """Serialize *packet* to its wire form (without canary)."""
    body = _encode_body(packet)
    header = _HEADER.pack(
        HEADER_SIZE + len(body), packet.type, packet.sender_pid, packet.sender_tid
    )
    return header + body


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _split_strings(body: bytes) -> list[str]:
    """Split a body of NUL-terminated strings, ignoring a missing final NUL."""
    if not body:
        return []
    parts = body.split(b"\0")
    if parts[-1] == b"":
        parts.pop()
    return [p.decode("utf-8", errors="replace") for p in parts]


def _nth(strings: list[str], index: int) -> str | None:
    return strings[index] if index < len(strings) else None


def _decode_body(ptype: PacketType, body: bytes, common: dict[str, int]) -> RunnerPacket:
    match ptype:
        case PacketType.LOG:
            (stream,) = _INT.unpack_from(body)
            return RunnerPacket(
                type=ptype, stream=stream, text=_nth(_split_strings(body[4:]), 0) or "", **common
            )
        case PacketType.EXEC:
            return RunnerPacket(type=ptype, argv=tuple(_split_strings(body)), **common)
        case PacketType.EXIT:
            (exit_code,) = _INT.unpack_from(body)
            return RunnerPacket(
                type=ptype,
                exit_code=exit_code,
                time_used=_nth(_split_strings(body[4:]), 0),
                **common,
            )
        case PacketType.SUBTEST_START | PacketType.DYNAMIC_SUBTEST_START:
            return RunnerPacket(type=ptype, name=_nth(_split_strings(body), 0), **common)
        case PacketType.SUBTEST_RESULT | PacketType.DYNAMIC_SUBTEST_RESULT:
            strings = _split_strings(body)
            return RunnerPacket(
                type=ptype,
                name=_nth(strings, 0),
                result=_nth(strings, 1),
                time_used=_nth(strings, 2),
                reason=_nth(strings, 3),
                **common,
            )
        case PacketType.VERSION_STRING:
            return RunnerPacket(type=ptype, text=_nth(_split_strings(body), 0), **common)
        case PacketType.RESULT_OVERRIDE:
            return RunnerPacket(type=ptype, result=_nth(_split_strings(body), 0), **common)
        case _:
            msg = f"Unknown packet type {ptype!r}"
            raise ValueError(msg)


def decode(data: bytes) -> tuple[RunnerPacket | None, int, bool]:
    """Decode one packet from the start of *data*.

    Args:
        data: Buffer starting with a packet header (no canary).

    Returns:
        ``(packet, consumed, ok)``. On failure ``packet`` is ``None``,
        ``consumed`` is 0 and ``ok`` is False; this happens for a buffer
        shorter than the header, a ``size`` that is smaller than the header
        or larger than the buffer, an unknown type, or a malformed body.
    """
    if len(data) < HEADER_SIZE:
        return None, 0, False

    size, raw_type, sender_pid, sender_tid = _HEADER.unpack_from(data)
    if size < HEADER_SIZE or size > len(data):
        return None, 0, False

    try:
        ptype = PacketType(raw_type)
    except ValueError:
        return None, 0, False
    if ptype == PacketType.INVALID:
        return None, 0, False

    body = bytes(data[HEADER_SIZE:size])
    try:
        packet = _decode_body(
            ptype, body, {"sender_pid": sender_pid, "sender_tid": sender_tid}
        )
    except struct.error:
        return None, 0, False

    return packet, size, True


def decode_datagram(data: bytes) -> RunnerPacket | None:
    """Decode a datagram that must contain exactly one packet.

    Returns ``None`` when the datagram is not a single well-formed packet,
    which the caller treats as a desynchronized stream.
    """
    packet, consumed, ok = decode(data)
    if not ok or consumed != len(data):
        return None
    return packet


# ---------------------------------------------------------------------------
# Dump files
# ---------------------------------------------------------------------------


def dump_with_canary(
    f: BinaryIO, packet: RunnerPacket | bytes, *, sync: bool = False
) -> None:
    """Append canary + packet to an open ``comms`` dump.

    Args:
        f: Binary file opened for appending.
        packet: A packet, or its already encoded wire bytes.
        sync: ``fdatasync`` the file afterwards.
    """
    raw = packet if isinstance(packet, bytes) else encode(packet)
    f.write(_CANARY.pack(CANARY) + raw)
    f.flush()
    if sync:
        os.fdatasync(f.fileno())


def read_dump(data: bytes) -> Iterator[RunnerPacket]:
    """Iterate over the packets of a ``comms`` dump.

    Packets before a corruption point are yielded normally; the corruption
    itself raises ``CommsParseError`` carrying the offset of the bad canary
    or packet, so nothing past it is ever consumed.

    Raises:
        CommsParseError: If a canary does not match or a packet is truncated.
    """
    offset = 0
    while offset < len(data):
        if len(data) - offset < CANARY_SIZE:
            msg = "Truncated canary"
            raise CommsParseError(msg, offset=offset)
        (canary,) = _CANARY.unpack_from(data, offset)
        if canary != CANARY:
            msg = f"Invalid canary {canary:#010x}"
            raise CommsParseError(msg, offset=offset)

        packet, consumed, ok = decode(data[offset + CANARY_SIZE :])
        if not ok or packet is None:
            msg = "Invalid packet"
            raise CommsParseError(msg, offset=offset)

        yield packet
        offset += CANARY_SIZE + consumed

"""Minecraft Java Edition wire protocol encoding and decoding.

Every frame on the wire is ``varint(length) || varint(packet_id) || body``.
Lengths and packet IDs are unsigned LEB128 varints, fixed-width integers are
big endian and strings are prefixed with their UTF-8 byte length.
"""

from __future__ import annotations

import struct
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import socket

MAX_PACKET_LENGTH = 2_097_151
MAX_STRING_LENGTH = 32_767

_VARINT_MAX_BYTES = 5
_VARLONG_MAX_BYTES = 10
_SEGMENT_BITS = 0x7F
_CONTINUE_BIT = 0x80

# Packet IDs are scoped to the protocol state, the same number means
# different things in different states.
HANDSHAKE_ID = 0
STATUS_REQUEST_ID = 0
STATUS_RESPONSE_ID = 0
PING_ID = 1
PONG_ID = 1
DISCONNECT_ID = 27
LEGACY_DISCONNECT_ID = 26  # before 1.20.2
DISCONNECT_IDS = frozenset({DISCONNECT_ID, LEGACY_DISCONNECT_ID})
LOGIN_START_ID = 0
LOGIN_DISCONNECT_ID = 0
LOGIN_ENCRYPTION_ID = 1
LOGIN_SUCCESS_ID = 2
LOGIN_COMPRESSION_ID = 3
LOGIN_PLUGIN_ID = 4


class NextState(IntEnum):
    """State announced at the end of a handshake."""

    STATUS = 1
    LOGIN = 2


class ProbeError(Exception):
    """Base exception for mcprobe errors."""


class FramingError(ProbeError):
    """Raised when bytes violate the frame or field encoding rules."""


class VarIntTooLongError(FramingError):
    """Raised when a varint has no terminating byte within its size bound."""


class StringTooLongError(FramingError):
    """Raised when a string exceeds MAX_STRING_LENGTH bytes."""


class PacketTooLargeError(FramingError):
    """Raised when a frame exceeds MAX_PACKET_LENGTH bytes."""


class EmptyPacketError(FramingError):
    """Raised when a peer declares a frame without a packet ID."""


class UnexpectedEOFError(FramingError):
    """Raised when a frame or field ends before all of its bytes arrived."""


class StreamClosedError(ProbeError):
    """Raised when the peer closes the stream before sending any frame byte."""


def encode_varint(value: int) -> bytes:
    """Encode a 32-bit value as a varint.

    Negative values are written as their 32-bit two's complement, so the
    result is never longer than five bytes.
    """
    if not -(2**31) <= value < 2**32:
        msg = f"Value {value} does not fit in a varint"
        raise ValueError(msg)
    return _encode_unsigned(value & 0xFFFFFFFF)


def encode_varlong(value: int) -> bytes:
    """Encode a 64-bit value as a varlong (at most ten bytes)."""
    if not -(2**63) <= value < 2**64:
        msg = f"Value {value} does not fit in a varlong"
        raise ValueError(msg)
    return _encode_unsigned(value & 0xFFFFFFFFFFFFFFFF)


def _encode_unsigned(value: int) -> bytes:
    out = bytearray()
    while True:
        if (value & ~_SEGMENT_BITS) == 0:
            out.append(value)
            return bytes(out)
        out.append((value & _SEGMENT_BITS) | _CONTINUE_BIT)
        value >>= 7


class PacketReader:
    """Typed reads over an in-memory byte buffer.

    Reads never touch a socket, so a short or malformed body fails with a
    local FramingError instead of blocking.
    """

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._offset = 0

    @property
    def remaining(self) -> int:
        """Number of unread bytes."""
        return len(self._data) - self._offset

    def read_bytes(self, length: int) -> bytes:
        if length < 0:
            msg = f"Read length cannot be negative: {length}"
            raise FramingError(msg)
        if length > self.remaining:
            msg = f"Expected {length} bytes, only {self.remaining} left"
            raise UnexpectedEOFError(msg)
        chunk = self._data[self._offset : self._offset + length]
        self._offset += length
        return chunk

    def read_rest(self) -> bytes:
        return self.read_bytes(self.remaining)

    def read_byte(self) -> int:
        return self.read_bytes(1)[0]

    def read_bool(self) -> bool:
        return self.read_byte() != 0

    def read_short(self) -> int:
        return self._unpack(">h", 2)

    def read_unsigned_short(self) -> int:
        return self._unpack(">H", 2)

    def read_int(self) -> int:
        return self._unpack(">i", 4)

    def read_long(self) -> int:
        return self._unpack(">q", 8)

    def read_varint(self) -> int:
        """Read an unsigned 32-bit varint."""
        return self._read_unsigned(_VARINT_MAX_BYTES) & 0xFFFFFFFF

    def read_varlong(self) -> int:
        """Read an unsigned 64-bit varlong."""
        return self._read_unsigned(_VARLONG_MAX_BYTES) & 0xFFFFFFFFFFFFFFFF

    def read_string(self) -> str:
        """Read a length-prefixed UTF-8 string.

        The declared length is checked against MAX_STRING_LENGTH before any
        of the string's bytes are consumed.
        """
        length = self.read_varint()
        if length > MAX_STRING_LENGTH:
            msg = f"String length {length} exceeds the maximum of {MAX_STRING_LENGTH}"
            raise StringTooLongError(msg)
        raw = self.read_bytes(length)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            msg = f"String is not valid UTF-8: {e}"
            raise FramingError(msg) from e

    def _unpack(self, fmt: str, size: int) -> int:
        (value,) = struct.unpack(fmt, self.read_bytes(size))
        return value

    def _read_unsigned(self, max_bytes: int) -> int:
        result = 0
        for i in range(max_bytes):
            byte = self.read_byte()
            result |= (byte & _SEGMENT_BITS) << (7 * i)
            if not byte & _CONTINUE_BIT:
                return result
        msg = f"Varint is longer than {max_bytes} bytes"
        raise VarIntTooLongError(msg)


class InboundPacket(PacketReader):
    """A packet received from a peer, positioned after its packet ID."""

    def __init__(self, packet_id: int, body: bytes) -> None:
        super().__init__(body)
        self.packet_id = packet_id

    @classmethod
    def decode(cls, payload: bytes) -> InboundPacket:
        """Decode a frame payload (everything after the length prefix)."""
        reader = PacketReader(payload)
        packet_id = reader.read_varint()
        return cls(packet_id, reader.read_rest())

    def __repr__(self) -> str:
        return f"InboundPacket(packet_id={self.packet_id}, remaining={self.remaining})"


class OutboundPacket:
    """A packet under construction.

    Fields are appended in wire order; build() adds the packet ID and the
    length prefix.
    """

    def __init__(self, packet_id: int) -> None:
        self.packet_id = packet_id
        self.body = bytearray()

    def write_bytes(self, data: bytes) -> None:
        self.body += data

    def write_byte(self, value: int) -> None:
        self._pack(">B", value)

    def write_bool(self, value: bool) -> None:  # noqa: FBT001
        self.write_byte(1 if value else 0)

    def write_short(self, value: int) -> None:
        self._pack(">h", value)

    def write_unsigned_short(self, value: int) -> None:
        self._pack(">H", value)

    def write_int(self, value: int) -> None:
        self._pack(">i", value)

    def write_long(self, value: int) -> None:
        self._pack(">q", value)

    def write_varint(self, value: int) -> None:
        self.body += encode_varint(value)

    def write_varlong(self, value: int) -> None:
        self.body += encode_varlong(value)

    def write_string(self, value: str) -> None:
        """Append a length-prefixed UTF-8 string.

        Raises StringTooLongError without writing anything if the encoded
        string is longer than MAX_STRING_LENGTH bytes.
        """
        raw = value.encode("utf-8")
        if len(raw) > MAX_STRING_LENGTH:
            msg = f"String length {len(raw)} exceeds the maximum of {MAX_STRING_LENGTH}"
            raise StringTooLongError(msg)
        self.body += encode_varint(len(raw)) + raw

    @property
    def size(self) -> int:
        """Size of the built frame in bytes, including the length prefix."""
        payload_length = len(encode_varint(self.packet_id)) + len(self.body)
        return len(encode_varint(payload_length)) + payload_length

    def build(self) -> bytes:
        """Serialize the packet with its ID and length prefix."""
        payload = encode_varint(self.packet_id) + bytes(self.body)
        if len(payload) > MAX_PACKET_LENGTH:
            msg = (
                f"Packet exceeds the maximum length of {MAX_PACKET_LENGTH}"
                f" by {len(payload) - MAX_PACKET_LENGTH} bytes"
            )
            raise PacketTooLargeError(msg)
        return encode_varint(len(payload)) + payload

    def send(self, sock: socket.socket) -> None:
        """Build the packet and write it to the socket."""
        sock.sendall(self.build())

    def _pack(self, fmt: str, value: int) -> None:
        try:
            self.body += struct.pack(fmt, value)
        except struct.error as e:
            msg = f"Value {value} is out of range for format {fmt!r}"
            raise ValueError(msg) from e


def read_packet(sock: socket.socket, timeout: float) -> InboundPacket:
    """Receive a single frame from the socket.

    The declared length is validated before the body is read, so a peer
    cannot make us allocate more than MAX_PACKET_LENGTH bytes. Socket errors
    (including timeouts) propagate to the caller unchanged.
    """
    sock.settimeout(timeout)

    length = _read_frame_length(sock)
    if length == 0:
        msg = "Received a packet without a packet ID"
        raise EmptyPacketError(msg)
    if length > MAX_PACKET_LENGTH:
        msg = f"Received packet is too long: {length}"
        raise PacketTooLargeError(msg)

    return InboundPacket.decode(_recv_exact(sock, length))


def _read_frame_length(sock: socket.socket) -> int:
    result = 0
    for i in range(_VARINT_MAX_BYTES):
        chunk = sock.recv(1)
        if not chunk:
            if i == 0:
                msg = "Connection closed by peer"
                raise StreamClosedError(msg)
            msg = "Connection closed while reading the packet length"
            raise UnexpectedEOFError(msg)
        byte = chunk[0]
        result |= (byte & _SEGMENT_BITS) << (7 * i)
        if not byte & _CONTINUE_BIT:
            return result & 0xFFFFFFFF
    msg = "Packet length varint is too long"
    raise VarIntTooLongError(msg)


def _recv_exact(sock: socket.socket, num_bytes: int) -> bytes:
    """Read exactly num_bytes from the socket, handling partial reads."""
    data = bytearray()
    while len(data) < num_bytes:
        chunk = sock.recv(min(num_bytes - len(data), 65536))
        if not chunk:
            msg = (
                f"Connection closed with {num_bytes - len(data)} bytes"
                " of the packet remaining"
            )
            raise UnexpectedEOFError(msg)
        data.extend(chunk)
    return bytes(data)

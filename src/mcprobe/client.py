"""Server list ping client with connection state management."""

from __future__ import annotations

import contextlib
import logging
import socket
import time
from enum import IntEnum
from typing import TYPE_CHECKING

from mcprobe.address import Address
from mcprobe.protocol import (
    DISCONNECT_IDS,
    HANDSHAKE_ID,
    LOGIN_DISCONNECT_ID,
    LOGIN_START_ID,
    PING_ID,
    PONG_ID,
    STATUS_REQUEST_ID,
    STATUS_RESPONSE_ID,
    FramingError,
    InboundPacket,
    NextState,
    OutboundPacket,
    ProbeError,
    read_packet,
)
from mcprobe.response import StatusResponse

if TYPE_CHECKING:
    from collections.abc import Iterator

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
DEFAULT_PROTOCOL = 47
MAX_NAME_LENGTH = 16
UUID_LENGTH = 16


class ConnState(IntEnum):
    """Connection state, only ever moves forward until the client is reset."""

    IDLE = 0
    CONNECTED = 1
    HANDSHAKE_COMPLETE = 2


class NetworkError(ProbeError):
    """Raised when the connection cannot be established, times out or breaks."""


class AlreadyConnectedError(ProbeError):
    """Raised when connect() is called on a client that is not idle."""


class InvalidStateError(ProbeError):
    """Raised when an exchange does not match the state announced in the handshake."""


class UnexpectedPacketIDError(ProbeError):
    """Raised when a response carries a packet ID not valid in the current state."""

    def __init__(self, received: int, expected: int) -> None:
        super().__init__(
            f"Response packet contains bad packet id: {received} (expected {expected})"
        )
        self.received = received
        self.expected = expected


class ServerDisconnectedError(ProbeError):
    """Raised when the server answers with a disconnect packet."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Disconnected by server: {reason}")
        self.reason = reason


class PongMismatchError(ProbeError):
    """Raised when the pong payload differs from the ping that was sent.

    The round trip still happened, so the measured latency is kept.
    """

    def __init__(self, latency: int, sent: int, received: int) -> None:
        super().__init__(f"Server responded with wrong pong id: {received} != {sent}")
        self.latency = latency
        self.sent = sent
        self.received = received


class SlpClient:
    """Drives a single TCP connection through the handshake and one exchange.

    Only one logical exchange (status, ping, or login probe) should be made
    per connection; servers close the socket after a pong or a login
    response.
    """

    def __init__(
        self,
        address: Address | str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        protocol: int = DEFAULT_PROTOCOL,
        srv: bool = True,
        sock: socket.socket | None = None,
    ) -> None:
        self.address = Address.parse(address) if isinstance(address, str) else address
        self.timeout = timeout
        self.protocol = protocol
        self.srv = srv
        self._sock = sock
        self._state = ConnState.IDLE if sock is None else ConnState.CONNECTED
        self._next_state: NextState | None = None

    @property
    def state(self) -> ConnState:
        return self._state

    @property
    def connected(self) -> bool:
        """Whether the client has an active socket connection."""
        return self._sock is not None

    def __enter__(self) -> SlpClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def connect(self) -> None:
        """Open the TCP connection, resolving an SRV record first if enabled."""
        if self._state > ConnState.IDLE:
            msg = "Client is already connected"
            raise AlreadyConnectedError(msg)

        if self.srv:
            self.address.resolve_srv(self.timeout)

        host, port = self.address.target
        try:
            self._sock = socket.create_connection((host, port), timeout=self.timeout)
        except OSError as e:
            msg = f"Failed to connect to {self.address}: {e}"
            raise NetworkError(msg) from e

        self._state = ConnState.CONNECTED
        log.debug("Connected to %s", self.address)

    def close(self) -> None:
        """Close the TCP connection and return to the idle state."""
        if self._sock is not None:
            with contextlib.suppress(OSError):
                self._sock.close()
            self._sock = None
        self._state = ConnState.IDLE
        self._next_state = None

    def handshake(self, next_state: NextState) -> None:
        """Announce the protocol version, target address and next state.

        The server never acknowledges a handshake.
        """
        # handshake: protocol version (varint), host (string),
        # port (unsigned short), next state (varint)
        packet = OutboundPacket(HANDSHAKE_ID)
        packet.write_varint(self.protocol)
        packet.write_string(self.address.host)
        packet.write_unsigned_short(self.address.port)
        packet.write_varint(next_state)
        self._send(packet)

        self._state = ConnState.HANDSHAKE_COMPLETE
        self._next_state = next_state

    def status(self) -> StatusResponse:
        """Query the server's status document."""
        with self._exchange(NextState.STATUS):
            self._send(OutboundPacket(STATUS_REQUEST_ID))
            response = self._recv()

            if response.packet_id in DISCONNECT_IDS:
                raise ServerDisconnectedError(response.read_string())
            if response.packet_id != STATUS_RESPONSE_ID:
                raise UnexpectedPacketIDError(response.packet_id, STATUS_RESPONSE_ID)

            return StatusResponse.from_json(response.read_string())

    def ping(self) -> int:
        """Measure the round trip latency in milliseconds.

        The server closes the connection after the pong, so the client is
        idle again afterwards.
        """
        with self._exchange(NextState.STATUS):
            timestamp = int(time.time())
            packet = OutboundPacket(PING_ID)
            packet.write_long(timestamp)

            start = time.perf_counter()
            self._send(packet)
            pong = self._recv()
            latency = int((time.perf_counter() - start) * 1000)

            if pong.packet_id != PONG_ID:
                raise UnexpectedPacketIDError(pong.packet_id, PONG_ID)
            token = pong.read_long()

        self.close()
        if token != timestamp:
            raise PongMismatchError(latency, timestamp, token)
        return latency

    def status_ping(self) -> StatusResponse:
        """Query the status and then ping over the same connection."""
        response = self.status()
        return response.with_latency(self.ping())

    def login_error(
        self, name: str = "mcprobe", uuid: bytes = bytes(UUID_LENGTH)
    ) -> tuple[int, str]:
        """Send a login start packet with one byte too many.

        The trailing byte makes the server's packet parser fail, and the
        resulting disconnect message identifies the server software.

        Returns the response's packet ID and string body, uninterpreted.
        """
        if len(name) > MAX_NAME_LENGTH:
            msg = f"Player name cannot be longer than {MAX_NAME_LENGTH} characters: {name!r}"
            raise ValueError(msg)
        if len(uuid) != UUID_LENGTH:
            msg = f"Player uuid has to be {UUID_LENGTH} bytes long, got {len(uuid)}"
            raise ValueError(msg)

        with self._exchange(NextState.LOGIN):
            # login start: name (string), uuid (16 bytes), then an unexpected byte
            packet = OutboundPacket(LOGIN_START_ID)
            packet.write_string(name)
            packet.write_bytes(uuid)
            packet.write_byte(0)
            self._send(packet)

            response = self._recv()
            try:
                reason = response.read_string() if response.remaining else ""
            except FramingError:
                if response.packet_id == LOGIN_DISCONNECT_ID:
                    raise
                reason = ""

        self.close()
        return response.packet_id, reason

    @contextlib.contextmanager
    def _exchange(self, next_state: NextState) -> Iterator[None]:
        """Connect and hand-shake if needed; close the connection on failure."""
        try:
            if self._state < ConnState.CONNECTED:
                self.connect()
            if self._state < ConnState.HANDSHAKE_COMPLETE:
                self.handshake(next_state)
            elif self._next_state is not None and self._next_state != next_state:
                msg = (
                    f"Connection was opened for {self._next_state.name.lower()},"
                    f" cannot switch to {next_state.name.lower()}"
                )
                raise InvalidStateError(msg)
            yield
        except BaseException:
            self.close()
            raise

    def _send(self, packet: OutboundPacket) -> None:
        """Send an encoded packet over the socket."""
        if self._sock is None:
            msg = "Not connected"
            raise NetworkError(msg)
        data = packet.build()
        try:
            self._sock.sendall(data)
        except OSError as e:
            self.close()
            msg = f"Failed to send data: {e}"
            raise NetworkError(msg) from e
        log.debug("Sent packet 0x%02x (%d bytes)", packet.packet_id, len(data))

    def _recv(self) -> InboundPacket:
        """Receive a single packet from the socket."""
        if self._sock is None:
            msg = "Not connected"
            raise NetworkError(msg)
        try:
            packet = read_packet(self._sock, self.timeout)
        except OSError as e:
            self.close()
            msg = f"Failed to receive packet: {e}"
            raise NetworkError(msg) from e
        log.debug("Received packet 0x%02x", packet.packet_id)
        return packet

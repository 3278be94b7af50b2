"""Minimal server answering the handshake, status, ping and login packets.

Each accepted connection is served by its own daemon thread. Handlers share
no mutable state: every one owns its socket, its read buffer and the
handshake it received.
"""

from __future__ import annotations

import contextlib
import json
import logging
import socket
import threading
import uuid
from dataclasses import dataclass

from mcprobe.client import DEFAULT_TIMEOUT, UnexpectedPacketIDError
from mcprobe.protocol import (
    HANDSHAKE_ID,
    LOGIN_DISCONNECT_ID,
    LOGIN_START_ID,
    PING_ID,
    PONG_ID,
    STATUS_REQUEST_ID,
    STATUS_RESPONSE_ID,
    InboundPacket,
    NextState,
    OutboundPacket,
    ProbeError,
    StreamClosedError,
    read_packet,
)
from mcprobe.response import ChatComponent, Players, StatusResponse, Version

log = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"  # noqa: S104
DEFAULT_PORT = 25565
LOGIN_REJECTION = "login not supported"
_ACCEPT_POLL_INTERVAL = 0.5
_UUID_LENGTH = 16


@dataclass(frozen=True)
class Handshake:
    """Values announced by a client's handshake packet."""

    protocol: int
    host: str
    port: int
    next_state: int


def default_status(
    *,
    description: str = "An mcprobe server",
    version_name: str = "mcprobe",
    protocol: int = 762,
    max_players: int = 20,
    online_players: int = 3,
) -> StatusResponse:
    """Build the canned status document the server answers with."""
    return StatusResponse(
        version=Version(name=version_name, protocol=protocol),
        players=Players(max=max_players, online=online_players),
        description=ChatComponent(text=description),
    )


class ConnectionHandler:
    """Serves the protocol on one accepted connection."""

    def __init__(
        self,
        sock: socket.socket,
        address: tuple[str, int],
        *,
        timeout: float,
        status: StatusResponse,
    ) -> None:
        self.sock = sock
        self.address = f"{address[0]}:{address[1]}"
        self.timeout = timeout
        self.status = status
        self.handshake: Handshake | None = None

    def handle(self) -> None:
        """Read the handshake and serve the state it announces."""
        self.handshake = self._read_handshake()
        log.info("%s: handshake: %s", self.address, self.handshake)

        match self.handshake.next_state:
            case NextState.STATUS:
                self._handle_status()
            case NextState.LOGIN:
                name, player_id = self._handle_login()
                log.info("%s: login: name=%s id=%s", self.address, name, player_id)
            case other:
                log.debug("%s: unsupported next state %s", self.address, other)

    def _read_handshake(self) -> Handshake:
        packet = self._recv()
        self._expect(packet, HANDSHAKE_ID)
        return Handshake(
            protocol=packet.read_varint(),
            host=packet.read_string(),
            port=packet.read_unsigned_short(),
            next_state=packet.read_varint(),
        )

    def _handle_status(self) -> None:
        # A status request may be followed by a ping on the same connection.
        while True:
            try:
                packet = self._recv()
            except StreamClosedError:
                return

            if packet.packet_id == STATUS_REQUEST_ID:
                self._send_status()
            elif packet.packet_id == PING_ID:
                self._send_pong(packet)
                return
            else:
                raise UnexpectedPacketIDError(packet.packet_id, STATUS_REQUEST_ID)

    def _send_status(self) -> None:
        packet = OutboundPacket(STATUS_RESPONSE_ID)
        packet.write_string(self.status.to_json())
        self._send(packet)
        log.info("%s: status request", self.address)

    def _send_pong(self, ping: InboundPacket) -> None:
        token = ping.read_long()
        pong = OutboundPacket(PONG_ID)
        pong.write_long(token)
        self._send(pong)
        log.info("%s: ping: token: %d", self.address, token)

    def _handle_login(self) -> tuple[str, str]:
        start = self._recv()
        self._expect(start, LOGIN_START_ID)

        name = start.read_string()
        # Clients before 1.19 do not send a UUID
        player_id = ""
        if start.remaining >= _UUID_LENGTH:
            player_id = str(uuid.UUID(bytes=start.read_bytes(_UUID_LENGTH)))
        if start.remaining:
            log.debug("%s: %d unexpected bytes in login start", self.address, start.remaining)

        self._send_disconnect(LOGIN_DISCONNECT_ID, LOGIN_REJECTION)
        return name, player_id

    def _send_disconnect(self, packet_id: int, reason: str) -> None:
        packet = OutboundPacket(packet_id)
        packet.write_string(json.dumps({"text": reason}))
        self._send(packet)

    def _expect(self, packet: InboundPacket, expected: int) -> None:
        if packet.packet_id != expected:
            raise UnexpectedPacketIDError(packet.packet_id, expected)

    def _recv(self) -> InboundPacket:
        return read_packet(self.sock, self.timeout)

    def _send(self, packet: OutboundPacket) -> None:
        packet.send(self.sock)


class StatusServer:
    """Accepts connections and serves each one on its own thread."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        status: StatusResponse | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.status = status or default_status()
        self._sock: socket.socket | None = None
        self._stopped = threading.Event()

    @property
    def server_address(self) -> tuple[str, int]:
        """The bound (host, port); useful when binding to port 0."""
        if self._sock is None:
            msg = "Server is not listening"
            raise RuntimeError(msg)
        host, port = self._sock.getsockname()[:2]
        return host, port

    def __enter__(self) -> StatusServer:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def start(self) -> None:
        """Bind and listen without accepting yet."""
        if self._sock is not None:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
            sock.listen()
        except OSError:
            sock.close()
            raise
        sock.settimeout(_ACCEPT_POLL_INTERVAL)
        self._sock = sock
        log.info("Listening on %s:%d", *self.server_address)

    def serve_forever(self) -> None:
        """Accept connections until shutdown() is called."""
        if self._stopped.is_set():
            return
        self.start()
        sock = self._sock
        while not self._stopped.is_set():
            try:
                client_sock, addr = sock.accept()
            except TimeoutError:
                continue
            except OSError:
                if self._stopped.is_set():
                    break
                raise

            thread = threading.Thread(
                target=self._handle_client,
                args=(client_sock, addr),
                daemon=True,
            )
            thread.start()

    def shutdown(self) -> None:
        """Stop accepting connections and close the listening socket."""
        self._stopped.set()
        if self._sock is not None:
            with contextlib.suppress(OSError):
                self._sock.close()
            self._sock = None

    def _handle_client(self, sock: socket.socket, addr: tuple[str, int]) -> None:
        log.debug("Connection from %s:%d", addr[0], addr[1])
        handler = ConnectionHandler(sock, addr, timeout=self.timeout, status=self.status)
        with sock:
            try:
                handler.handle()
            except (ProbeError, OSError):
                log.debug("%s: connection failed", handler.address, exc_info=True)

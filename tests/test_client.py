"""Tests for the server list ping client."""

import json
from unittest.mock import MagicMock, patch

import pytest

from mcprobe.client import (
    AlreadyConnectedError,
    ConnState,
    InvalidStateError,
    NetworkError,
    PongMismatchError,
    ServerDisconnectedError,
    SlpClient,
    UnexpectedPacketIDError,
)
from mcprobe.protocol import InboundPacket, OutboundPacket, PacketReader, StreamClosedError
from mcprobe.response import MalformedResponseError

STATUS_JSON = json.dumps(
    {
        "version": {"name": "1.20.1", "protocol": 763},
        "players": {"max": 20, "online": 1},
        "description": "A Minecraft Server",
    }
)


def _string_packet(packet_id: int, text: str) -> bytes:
    packet = OutboundPacket(packet_id)
    packet.write_string(text)
    return packet.build()


def _long_packet(packet_id: int, value: int) -> bytes:
    packet = OutboundPacket(packet_id)
    packet.write_long(value)
    return packet.build()


def _mock_socket_with_responses(*response_packets: bytes):
    """Create a mock socket that returns the given response packets in sequence."""
    all_data = b"".join(response_packets)
    offset = 0

    def mock_recv(num_bytes):
        nonlocal offset
        chunk = all_data[offset : offset + num_bytes]
        offset += len(chunk)
        return chunk

    mock_sock = MagicMock()
    mock_sock.recv.side_effect = mock_recv
    return mock_sock


def _sent_packets(mock_sock) -> list[InboundPacket]:
    """Decode everything the client wrote to the mock socket."""
    data = b"".join(call.args[0] for call in mock_sock.sendall.call_args_list)
    reader = PacketReader(data)
    packets = []
    while reader.remaining:
        length = reader.read_varint()
        packets.append(InboundPacket.decode(reader.read_bytes(length)))
    return packets


@pytest.fixture
def connect():
    """Patch socket.create_connection to hand out the given mock socket."""
    with patch("mcprobe.client.socket.create_connection") as mock_create:

        def _install(mock_sock):
            mock_create.return_value = mock_sock
            return mock_create

        yield _install


class TestConnect:
    def test_connect_success(self, connect):
        mock_create = connect(MagicMock())

        client = SlpClient("localhost", srv=False)
        client.connect()

        assert client.connected
        assert client.state == ConnState.CONNECTED
        mock_create.assert_called_once_with(("localhost", 25565), timeout=5.0)

    def test_connect_failure(self, connect):
        mock_create = connect(MagicMock())
        mock_create.side_effect = OSError("Connection refused")

        client = SlpClient("localhost", srv=False)
        with pytest.raises(NetworkError, match="Connection refused"):
            client.connect()
        assert client.state == ConnState.IDLE

    def test_connect_twice(self, connect):
        connect(MagicMock())
        client = SlpClient("localhost", srv=False)
        client.connect()

        with pytest.raises(AlreadyConnectedError):
            client.connect()

    def test_connect_uses_srv_target(self, connect):
        mock_create = connect(MagicMock())
        client = SlpClient("example.com")

        def fake_resolve(timeout):
            client.address.srv_host = "mc.example.com"
            client.address.srv_port = 25566
            return True

        with patch.object(client.address, "resolve_srv", side_effect=fake_resolve):
            client.connect()

        mock_create.assert_called_once_with(("mc.example.com", 25566), timeout=5.0)

    def test_close(self, connect):
        mock_sock = MagicMock()
        connect(mock_sock)

        client = SlpClient("localhost", srv=False)
        client.connect()
        client.close()

        assert not client.connected
        assert client.state == ConnState.IDLE
        mock_sock.close.assert_called_once()

    def test_context_manager_closes(self, connect):
        mock_sock = MagicMock()
        connect(mock_sock)

        with SlpClient("localhost", srv=False) as client:
            client.connect()
        mock_sock.close.assert_called_once()


class TestHandshake:
    def test_handshake_fields(self):
        mock_sock = MagicMock()
        client = SlpClient("mc.example.com:25570", protocol=763, sock=mock_sock)
        client.handshake(2)

        (packet,) = _sent_packets(mock_sock)
        assert packet.packet_id == 0
        assert packet.read_varint() == 763
        assert packet.read_string() == "mc.example.com"
        assert packet.read_unsigned_short() == 25570
        assert packet.read_varint() == 2
        assert packet.remaining == 0
        assert client.state == ConnState.HANDSHAKE_COMPLETE


class TestStatus:
    def test_status_auto_connects_and_handshakes(self, connect):
        mock_sock = _mock_socket_with_responses(_string_packet(0, STATUS_JSON))
        connect(mock_sock)

        response = SlpClient("localhost", srv=False).status()

        assert response.version.protocol == 763
        assert response.players.online == 1
        assert str(response.description) == "A Minecraft Server"

        handshake, request = _sent_packets(mock_sock)
        assert handshake.packet_id == 0
        assert handshake.read_varint() == 47
        assert request.packet_id == 0
        assert request.remaining == 0

    @pytest.mark.parametrize("packet_id", [27, 26])
    def test_disconnect(self, connect, packet_id):
        mock_sock = _mock_socket_with_responses(
            _string_packet(packet_id, '{"text":"Server is restarting"}')
        )
        connect(mock_sock)

        client = SlpClient("localhost", srv=False)
        with pytest.raises(ServerDisconnectedError, match="restarting"):
            client.status()
        assert not client.connected

    def test_unexpected_packet_id(self, connect):
        connect(_mock_socket_with_responses(_string_packet(5, STATUS_JSON)))

        with pytest.raises(UnexpectedPacketIDError) as exc_info:
            SlpClient("localhost", srv=False).status()
        assert exc_info.value.received == 5
        assert exc_info.value.expected == 0

    def test_malformed_json(self, connect):
        connect(_mock_socket_with_responses(_string_packet(0, "{not json")))

        with pytest.raises(MalformedResponseError):
            SlpClient("localhost", srv=False).status()

    def test_stream_closed(self, connect):
        connect(_mock_socket_with_responses())

        client = SlpClient("localhost", srv=False)
        with pytest.raises(StreamClosedError):
            client.status()
        assert client.state == ConnState.IDLE

    def test_recv_error(self, connect):
        mock_sock = MagicMock()
        mock_sock.recv.side_effect = TimeoutError("timed out")
        connect(mock_sock)

        with pytest.raises(NetworkError, match="timed out"):
            SlpClient("localhost", srv=False).status()

    def test_send_error(self, connect):
        mock_sock = MagicMock()
        mock_sock.sendall.side_effect = BrokenPipeError("Broken pipe")
        connect(mock_sock)

        client = SlpClient("localhost", srv=False)
        with pytest.raises(NetworkError, match="Broken pipe"):
            client.status()
        assert not client.connected


class TestPing:
    def test_ping_returns_latency(self, connect):
        mock_sock = _mock_socket_with_responses(_long_packet(1, 1000))
        connect(mock_sock)

        client = SlpClient("localhost", srv=False)
        with patch("mcprobe.client.time") as mock_time:
            mock_time.time.return_value = 1000.5
            mock_time.perf_counter.side_effect = [10.0, 10.25]
            latency = client.ping()

        assert latency == 250
        assert client.state == ConnState.IDLE

        _handshake, ping = _sent_packets(mock_sock)
        assert ping.packet_id == 1
        assert ping.read_long() == 1000

    def test_pong_mismatch_keeps_latency(self, connect):
        connect(_mock_socket_with_responses(_long_packet(1, 999)))

        client = SlpClient("localhost", srv=False)
        with patch("mcprobe.client.time") as mock_time:
            mock_time.time.return_value = 1000.0
            mock_time.perf_counter.side_effect = [10.0, 10.125]
            with pytest.raises(PongMismatchError) as exc_info:
                client.ping()

        assert exc_info.value.latency == 125
        assert exc_info.value.sent == 1000
        assert exc_info.value.received == 999
        assert not client.connected

    def test_wrong_pong_id(self, connect):
        connect(_mock_socket_with_responses(_long_packet(3, 1000)))

        with pytest.raises(UnexpectedPacketIDError):
            SlpClient("localhost", srv=False).ping()

    def test_status_then_ping_share_connection(self, connect):
        mock_sock = _mock_socket_with_responses(
            _string_packet(0, STATUS_JSON), _long_packet(1, 1000)
        )
        mock_create = connect(mock_sock)

        client = SlpClient("localhost", srv=False)
        with patch("mcprobe.client.time") as mock_time:
            mock_time.time.return_value = 1000.0
            mock_time.perf_counter.side_effect = [1.0, 1.5]
            response = client.status_ping()

        assert response.latency == 500
        mock_create.assert_called_once()
        packet_ids = [p.packet_id for p in _sent_packets(mock_sock)]
        assert packet_ids == [0, 0, 1]


class TestLoginError:
    def test_sends_oversized_login_start(self, connect):
        reason = '{"translate":"disconnect.genericReason","with":["boom"]}'
        mock_sock = _mock_socket_with_responses(_string_packet(0, reason))
        connect(mock_sock)

        client = SlpClient("localhost", srv=False)
        packet_id, body = client.login_error()

        assert packet_id == 0
        assert body == reason
        assert not client.connected

        handshake, login = _sent_packets(mock_sock)
        handshake.read_varint()
        handshake.read_string()
        handshake.read_unsigned_short()
        assert handshake.read_varint() == 2
        assert login.packet_id == 0
        assert login.read_string() == "mcprobe"
        assert login.read_bytes(16) == bytes(16)
        assert login.read_rest() == b"\x00"

    def test_non_disconnect_without_string(self, connect):
        connect(_mock_socket_with_responses(OutboundPacket(3).build()))

        assert SlpClient("localhost", srv=False).login_error() == (3, "")

    def test_non_disconnect_with_binary_body(self, connect):
        packet = OutboundPacket(1)
        packet.write_bytes(b"\xff")
        connect(_mock_socket_with_responses(packet.build()))

        assert SlpClient("localhost", srv=False).login_error() == (1, "")

    def test_name_too_long(self):
        client = SlpClient("localhost", srv=False)
        with pytest.raises(ValueError, match="longer than 16"):
            client.login_error(name="a" * 17)

    def test_bad_uuid_length(self):
        client = SlpClient("localhost", srv=False)
        with pytest.raises(ValueError, match="16 bytes"):
            client.login_error(uuid=b"\x00" * 15)

    def test_cannot_switch_state(self, connect):
        connect(_mock_socket_with_responses(_string_packet(0, STATUS_JSON)))

        client = SlpClient("localhost", srv=False)
        client.status()
        with pytest.raises(InvalidStateError):
            client.login_error()
        assert not client.connected

from __future__ import annotations

import socket
import struct

import pytest

from reforger_ctrl.common.errors import (
    RconAuthenticationError,
    RconConnectionError,
    RconPermissionError,
    RconUnavailableError,
)
from reforger_ctrl.core.models import RconPermission
from reforger_ctrl.core.rcon import RconClient, parse_player_list, parse_settings


def frame(packet_id: int, packet_type: int, body: str = "") -> bytes:
    data = body.encode("utf-8")
    return struct.pack("<iii", 10 + len(data), packet_id, packet_type) + data + b"\x00\x00"


class FakeRconSocket:
    """Answers each request frame as a Reforger RCON endpoint would."""

    def __init__(self, password="secret", replies=None, notifications=(), refuse=False, drop_on_exec=False):
        self.password = password
        self.replies = replies or {}
        self.notifications = list(notifications)
        self.refuse = refuse
        self.drop_on_exec = drop_on_exec
        self.buffer = b""
        self.requests = []
        self.closed = False

    def settimeout(self, value):
        pass

    def connect(self, address):
        if self.refuse:
            raise ConnectionRefusedError("refused")

    def sendall(self, data):
        _size, packet_id, packet_type = struct.unpack("<iii", data[:12])
        body = data[12:-2].decode("utf-8")
        self.requests.append((packet_type, body))
        if packet_type == 3:
            ok = body == self.password
            self.buffer += frame(0, 0) + frame(packet_id if ok else -1, 2)
            return
        if self.drop_on_exec:
            raise BrokenPipeError("broken pipe")
        for note in self.notifications:
            self.buffer += frame(9999, 0, note)
        reply = self.replies.get(body, "")
        chunks = reply if isinstance(reply, list) else [reply]
        for chunk in chunks:
            self.buffer += frame(packet_id, 0, chunk)

    def recv(self, size):
        if not self.buffer:
            raise socket.timeout("timed out")
        data, self.buffer = self.buffer[:size], self.buffer[size:]
        return data

    def close(self):
        self.closed = True


def make_client(*sockets, **kwargs):
    queue = list(sockets)
    sleeps = []
    client = RconClient("127.0.0.1", 19999, password="secret", read_timeout=0.1, retry_delay=0.5,
                        socket_factory=lambda: queue.pop(0), sleep=sleeps.append, **kwargs)
    return client, sleeps


def test_execute_authenticates_and_returns_response():
    sock = FakeRconSocket(replies={"#status": "Server: running"})
    client, _ = make_client(sock)

    assert client.execute("#status") == "Server: running"
    assert sock.requests[0] == (3, "secret")
    assert sock.requests[1] == (2, "#status")
    assert client.is_connected()


def test_multi_packet_response_is_joined():
    sock = FakeRconSocket(replies={"#players": ["0; Alice; 76561198000000001\n", "1; Bob\n"]})
    client, _ = make_client(sock)
    assert client.execute("#players") == "0; Alice; 76561198000000001\n1; Bob\n"


def test_unsolicited_frames_are_queued_as_notifications():
    sock = FakeRconSocket(replies={"#status": "ok"}, notifications=["Player Alice connected"])
    client, _ = make_client(sock)

    assert client.execute("#status") == "ok"
    assert client.drain_notifications() == ["Player Alice connected"]
    assert client.drain_notifications() == []


def test_broken_session_reconnects_once():
    broken = FakeRconSocket(drop_on_exec=True)
    healthy = FakeRconSocket(replies={"say -1 Restart in 5 minutes": ""})
    client, sleeps = make_client(broken, healthy)

    client.broadcast("Restart in 5 minutes")
    assert sleeps == [0.5]
    assert broken.closed
    assert healthy.requests[-1] == (2, "say -1 Restart in 5 minutes")


def test_second_failure_raises_unavailable():
    client, sleeps = make_client(FakeRconSocket(refuse=True), FakeRconSocket(refuse=True))
    with pytest.raises(RconUnavailableError) as excinfo:
        client.execute("#status")
    assert isinstance(excinfo.value.__cause__, RconConnectionError)
    assert sleeps == [0.5]
    assert not client.is_connected()


def test_wrong_password_surfaces_authentication_cause():
    client, _ = make_client(FakeRconSocket(password="other"), FakeRconSocket(password="other"))
    with pytest.raises(RconUnavailableError) as excinfo:
        client.execute("#status")
    assert isinstance(excinfo.value.__cause__, RconAuthenticationError)


def test_monitor_permission_blocks_admin_commands():
    sock = FakeRconSocket(replies={"#players": ""})
    client, _ = make_client(sock, permission=RconPermission.MONITOR)

    with pytest.raises(RconPermissionError):
        client.kick("1", "afk")
    with pytest.raises(RconPermissionError):
        client.shutdown()
    assert sock.requests == []
    client.execute("#players")
    assert sock.requests[-1] == (2, "#players")


def test_admin_command_formats():
    sock = FakeRconSocket()
    client, _ = make_client(sock)
    client.kick("7", "teamkilling")
    client.ban("7", "cheating", duration=3600)
    client.shutdown()
    assert [body for kind, body in sock.requests if kind == 2] == [
        "#kick 7 teamkilling",
        "#ban create 7 3600 cheating",
        "#shutdown",
    ]


def test_invalid_commands_are_rejected():
    client, _ = make_client()
    with pytest.raises(ValueError):
        client.execute("")
    with pytest.raises(ValueError):
        client.execute("x" * 2000)
    with pytest.raises(ValueError):
        RconClient(port=70000)


def test_parse_player_list_reads_rows():
    output = "Players on server:\n0; Alice; 76561198000000001; 45ms\n#1 | Bob\n"
    players = parse_player_list(output)
    assert [p.name for p in players] == ["Alice", "Bob"]
    assert players[0].steam_id == "76561198000000001"
    assert players[0].ping == 45
    assert players[1].steam_id is None


def test_parse_settings_accepts_colon_and_equals():
    assert parse_settings("name: Everon Nights\nmaxPlayers = 32\n\nnoise") == {
        "name": "Everon Nights",
        "maxPlayers": "32",
    }

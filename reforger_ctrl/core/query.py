"""A2S status queries (UDP) against a running dedicated server."""

from __future__ import annotations

import socket
import struct
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple, Union

from reforger_ctrl.common.constants import A2SPacketTypes, DEFAULT_QUERY_PORT
from reforger_ctrl.common.logging_config import get_logger
from reforger_ctrl.core.models import Player

HEADER = b"\xFF\xFF\xFF\xFF"
INFO_PAYLOAD = b"Source Engine Query\x00"
NO_CHALLENGE = b"\xFF\xFF\xFF\xFF"
MAX_DATAGRAM_SIZE = 65535


@dataclass
class QueryResult:
    """Parsed A2S_INFO answer."""

    name: str
    map: str
    folder: str
    game: str
    app_id: int
    players: int
    max_players: int
    bots: int
    server_type: str
    environment: str
    visibility: str
    vac: bool
    version: str = ""
    ping: float = 0.0


@dataclass
class Unreachable:
    """A query that got no usable answer (timeout, socket error, bad payload)."""

    reason: str


class _Reader:
    """Cursor over a response datagram."""

    def __init__(self, data: bytes, offset: int = 0) -> None:
        self.data = data
        self.offset = offset

    def remaining(self) -> int:
        return len(self.data) - self.offset

    def byte(self) -> int:
        if self.offset >= len(self.data):
            raise ValueError("Truncated payload")
        value = self.data[self.offset]
        self.offset += 1
        return value

    def unpack(self, fmt: str) -> Tuple:
        size = struct.calcsize(fmt)
        if self.offset + size > len(self.data):
            raise ValueError("Truncated payload")
        values = struct.unpack_from(fmt, self.data, self.offset)
        self.offset += size
        return values

    def string(self) -> str:
        end = self.data.find(b"\x00", self.offset)
        if end < 0:
            raise ValueError("Unterminated string")
        value = self.data[self.offset:end].decode("utf-8", errors="replace")
        self.offset = end + 1
        return value


def parse_info_response(data: bytes) -> QueryResult:
    """Parse an ``0x49`` A2S_INFO payload (including the 4-byte header)."""
    if not data.startswith(HEADER) or len(data) < 6:
        raise ValueError("Missing A2S header")
    reader = _Reader(data, 4)
    if reader.byte() != A2SPacketTypes.INFO_RESPONSE:
        raise ValueError("Unexpected response type")
    reader.byte()  # protocol
    name = reader.string()
    map_name = reader.string()
    folder = reader.string()
    game = reader.string()
    (app_id,) = reader.unpack("<H")
    players = reader.byte()
    max_players = reader.byte()
    bots = reader.byte()
    server_type = chr(reader.byte())
    environment = chr(reader.byte())
    visibility = "public" if reader.byte() == 0 else "private"
    vac = reader.byte() == 1
    version = reader.string() if reader.remaining() > 0 else ""
    return QueryResult(
        name=name,
        map=map_name,
        folder=folder,
        game=game,
        app_id=app_id,
        players=players,
        max_players=max_players,
        bots=bots,
        server_type=server_type,
        environment=environment,
        visibility=visibility,
        vac=vac,
        version=version,
    )


def parse_player_response(data: bytes, now: Optional[datetime] = None) -> List[Player]:
    """Parse an ``0x44`` A2S_PLAYER payload (including the 4-byte header)."""
    if not data.startswith(HEADER) or len(data) < 6:
        raise ValueError("Missing A2S header")
    reader = _Reader(data, 4)
    if reader.byte() != A2SPacketTypes.PLAYER_RESPONSE:
        raise ValueError("Unexpected response type")
    now = now or datetime.now()
    count = reader.byte()
    players = []
    for _ in range(count):
        reader.byte()  # index
        name = reader.string()
        score, duration = reader.unpack("<if")
        players.append(Player(
            name=name or "Unknown",
            joined_at=now - timedelta(seconds=max(0.0, duration)),
            score=score,
        ))
    return players


class A2SQueryClient:
    """Query a server's A2S port; failures come back as ``Unreachable``."""

    def __init__(self, host: str = "127.0.0.1", port: int = DEFAULT_QUERY_PORT, timeout: float = 1.5,
                 socket_factory: Optional[Callable[[], socket.socket]] = None) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self._socket_factory = socket_factory or (lambda: socket.socket(socket.AF_INET, socket.SOCK_DGRAM))
        self._log = get_logger(__name__)

    def _exchange(self, request: bytes, build_retry: Callable[[bytes], bytes]) -> bytes:
        sock = self._socket_factory()
        try:
            sock.settimeout(self.timeout)
            sock.sendto(request, (self.host, self.port))
            data, _addr = sock.recvfrom(MAX_DATAGRAM_SIZE)
            if len(data) >= 9 and data[4] == A2SPacketTypes.CHALLENGE_RESPONSE:
                sock.sendto(build_retry(data[5:9]), (self.host, self.port))
                data, _addr = sock.recvfrom(MAX_DATAGRAM_SIZE)
            return data
        finally:
            sock.close()

    def info(self) -> Union[QueryResult, Unreachable]:
        request = HEADER + bytes([A2SPacketTypes.INFO_REQUEST]) + INFO_PAYLOAD
        started = time.monotonic()
        try:
            data = self._exchange(request, lambda challenge: request + challenge)
            result = parse_info_response(data)
        except (OSError, ValueError) as exc:
            return self._unreachable("info", exc)
        result.ping = round((time.monotonic() - started) * 1000.0, 1)
        return result

    def players(self) -> Union[List[Player], Unreachable]:
        prefix = HEADER + bytes([A2SPacketTypes.PLAYER_REQUEST])
        try:
            data = self._exchange(prefix + NO_CHALLENGE, lambda challenge: prefix + challenge)
            return parse_player_response(data)
        except (OSError, ValueError) as exc:
            return self._unreachable("players", exc)

    def _unreachable(self, query: str, exc: Exception) -> Unreachable:
        reason = "timeout" if isinstance(exc, socket.timeout) else str(exc) or exc.__class__.__name__
        self._log.debug("A2S %s query to %s:%s failed: %s", query, self.host, self.port, reason)
        return Unreachable(reason)

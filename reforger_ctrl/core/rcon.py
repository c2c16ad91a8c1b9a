"""
RCON (Remote Console) communication module for Reforger Control.

Speaks the little-endian ``size, id, type, body\\0\\0`` framing over TCP.
"""

import re
import select
import socket
import struct
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, NamedTuple, Optional

from reforger_ctrl.common.constants import DEFAULT_RCON_PORT, RconPacketTypes
from reforger_ctrl.common.errors import (
    RconAuthenticationError,
    RconConnectionError,
    RconPacketError,
    RconPermissionError,
    RconTimeoutError,
    RconUnavailableError,
)
from reforger_ctrl.common.logging_config import get_logger
from reforger_ctrl.core.models import Player, RconPermission

READ_ONLY_COMMANDS = frozenset({"#players", "#status", "#settings"})

STEAM_ID_RE = re.compile(r"^\d{17}$")
PING_RE = re.compile(r"^(\d+)\s*(?:ms)?$", re.IGNORECASE)
SETTING_RE = re.compile(r"^\s*([A-Za-z_][\w.]*)\s*[:=]\s*(.*?)\s*$")

RECOVERABLE_ERRORS = (RconAuthenticationError, RconConnectionError, RconPacketError, RconTimeoutError)


class RconPacket(NamedTuple):
    """RCON packet structure."""
    size: int
    id: int
    type: int
    body: str


def parse_player_list(output: str) -> List[Player]:
    """Parse ``#players`` output: one ``id; name; [steam id]; [ping]`` row per player."""
    players = []
    for line in output.splitlines():
        parts = [part.strip() for part in re.split(r"[;|]", line) if part.strip()]
        if len(parts) < 2 or not parts[0].lstrip("#").isdigit():
            continue
        steam_id = None
        ping = 0
        for part in parts[2:]:
            if STEAM_ID_RE.match(part):
                steam_id = part
                continue
            match = PING_RE.match(part)
            if match:
                ping = int(match.group(1))
        players.append(Player(name=parts[1], steam_id=steam_id, ping=ping))
    return players


def parse_settings(output: str) -> Dict[str, str]:
    """Parse ``key: value`` / ``key = value`` lines."""
    settings = {}
    for line in output.splitlines():
        match = SETTING_RE.match(line)
        if match:
            settings[match.group(1)] = match.group(2)
    return settings


class RconClient:
    """RCON client for one dedicated server.

    A single authenticated session is cached and shared; the internal lock
    serialises whole request/response exchanges between threads.
    """

    MAX_PACKET_SIZE = 4096
    MAX_COMMAND_LENGTH = 1000
    MAX_NOTIFICATIONS = 100

    def __init__(self, host: str = '127.0.0.1', port: int = DEFAULT_RCON_PORT, password: str = '',
                 permission: RconPermission = RconPermission.ADMIN,
                 connect_timeout: float = 5.0, read_timeout: float = 5.0, retry_delay: float = 1.0,
                 socket_factory: Optional[Callable[[], socket.socket]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize RCON client.

        Args:
            host: Server address
            port: RCON port
            password: RCON password
            permission: Permission level configured for this server
            connect_timeout: Timeout for connection establishment
            read_timeout: Timeout for socket read operations
            retry_delay: Delay before the single reconnect attempt
        """
        self.host = host
        self.port = self._check_port(port)
        self.password = password
        self.permission = RconPermission(permission)
        self.connect_timeout = max(0.1, connect_timeout)
        self.read_timeout = max(0.1, read_timeout)
        self.retry_delay = max(0.0, retry_delay)
        self.notifications: Deque[str] = deque(maxlen=self.MAX_NOTIFICATIONS)
        self.socket = None
        self._socket_factory = socket_factory or (lambda: socket.socket(socket.AF_INET, socket.SOCK_STREAM))
        self._sleep = sleep
        self._connected = False
        self._authenticated = False
        self._next_id = 0
        self._lock = threading.RLock()
        self._log = get_logger(__name__)

    @staticmethod
    def _check_port(port: int) -> int:
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            raise ValueError(f"RCON port out of range: {port!r}")
        return port

    def _clean_command(self, command: str) -> str:
        """Strip control characters; Reforger commands are a single line."""
        if not isinstance(command, str):
            raise ValueError("RCON command must be a string")
        cleaned = ''.join(ch for ch in command.strip() if ch == '\t' or ch.isprintable())
        if not cleaned:
            raise ValueError("RCON command is empty")
        if len(cleaned) > self.MAX_COMMAND_LENGTH:
            raise ValueError(f"RCON command exceeds {self.MAX_COMMAND_LENGTH} characters")
        return cleaned

    def check_permission(self, command: str) -> None:
        """Reject commands a ``monitor`` session may not issue."""
        if self.permission == RconPermission.ADMIN:
            return
        verb = command.strip().split(None, 1)[0].lower() if command.strip() else ''
        if verb not in READ_ONLY_COMMANDS:
            raise RconPermissionError(
                f"Command '{verb}' requires admin RCON permission (configured: {self.permission.value})"
            )

    def _allocate_id(self) -> int:
        self._next_id = self._next_id % (2**31 - 1) + 1
        return self._next_id

    def _encode(self, packet_id: int, packet_type: int, body: str) -> bytes:
        # IDs and types are signed because -1 is the authentication failure sentinel.
        data_bytes = body.encode('utf-8')
        return struct.pack('<iii', 10 + len(data_bytes), packet_id, packet_type) + data_bytes + b'\x00\x00'

    @staticmethod
    def _decode_body(raw: bytes) -> str:
        # Body is NUL terminated and followed by an empty padding string.
        return raw.split(b'\x00', 1)[0].decode('utf-8', errors='replace')

    def _read(self, count: int) -> bytes:
        if self.socket is None:
            raise RconConnectionError("Socket not connected")
        buffer = bytearray()
        try:
            while len(buffer) < count:
                chunk = self.socket.recv(count - len(buffer))
                if not chunk:
                    self._connected = False
                    raise RconConnectionError(f"RCON peer {self.host}:{self.port} closed the connection")
                buffer.extend(chunk)
        except socket.timeout as exc:
            raise RconTimeoutError(f"No RCON data within {self.read_timeout}s") from exc
        except OSError as exc:
            self._connected = False
            raise RconConnectionError(f"RCON read from {self.host}:{self.port} failed: {exc}") from exc
        return bytes(buffer)

    def _receive_packet(self) -> RconPacket:
        """Receive one complete frame, handling partial reads."""
        (packet_size,) = struct.unpack('<i', self._read(4))
        if not 10 <= packet_size <= self.MAX_PACKET_SIZE - 4:
            raise RconPacketError(f"RCON frame length {packet_size} outside 10..{self.MAX_PACKET_SIZE - 4}")
        payload = self._read(packet_size)
        packet_id, packet_type = struct.unpack('<ii', payload[:8])
        return RconPacket(packet_size, packet_id, packet_type, self._decode_body(payload[8:]))

    def _queue_notification(self, packet: RconPacket) -> None:
        if packet.body:
            self._log.debug("RCON notification: %s", packet.body)
            self.notifications.append(packet.body)

    def _more_pending(self) -> bool:
        """True when another response frame may follow shortly."""
        if not self.socket:
            return False
        if not callable(getattr(self.socket, 'fileno', None)):
            return True
        try:
            readable, _, _ = select.select([self.socket], [], [], min(0.2, self.read_timeout / 5))
        except (OSError, ValueError, TypeError):
            return False
        return bool(readable)

    def _send(self, packet_id: int, packet_type: int, body: str) -> None:
        if not self.socket or not self._connected:
            raise RconConnectionError("Socket not connected")
        try:
            self.socket.settimeout(self.read_timeout)
            self.socket.sendall(self._encode(packet_id, packet_type, body))
        except socket.timeout as e:
            raise RconTimeoutError(f"Timed out sending packet after {self.read_timeout}s") from e
        except OSError as e:
            self._connected = False
            raise RconConnectionError(f"Socket error while sending packet: {e}") from e

    def _exchange(self, command: str) -> str:
        """Send one command and accumulate its (possibly multi-packet) response."""
        packet_id = self._allocate_id()
        self._send(packet_id, RconPacketTypes.EXEC_COMMAND, command)

        combined = []
        response_count = 0
        while True:
            try:
                packet = self._receive_packet()
            except RconTimeoutError:
                if response_count:
                    break
                raise

            if packet.id != packet_id:
                # Frames not answering this request are server-initiated messages.
                self._queue_notification(packet)
                continue

            if packet.type != RconPacketTypes.RESPONSE_VALUE:
                raise RconPacketError(
                    f"Unexpected response type: {packet.type}, expected {RconPacketTypes.RESPONSE_VALUE}"
                )

            response_count += 1
            if not packet.body:
                # Empty body marks termination for multi-packet responses.
                break
            combined.append(packet.body)
            if not self._more_pending():
                break

        return ''.join(combined)

    def _authenticate(self) -> None:
        """
        Authenticate with the RCON server.

        Raises:
            RconAuthenticationError: If the server rejects the password
        """
        packet_id = self._allocate_id()
        self._send(packet_id, RconPacketTypes.AUTH, self.password)
        while True:
            packet = self._receive_packet()
            if packet.type != RconPacketTypes.AUTH_RESPONSE:
                # Some servers send an empty RESPONSE_VALUE ahead of the auth result.
                if packet.id not in (packet_id, -1):
                    self._queue_notification(packet)
                continue
            if packet.id == -1:
                self._authenticated = False
                raise RconAuthenticationError(f"RCON password rejected by {self.host}:{self.port}")
            if packet.id == packet_id:
                self._authenticated = True
                return

    def _open_session(self) -> None:
        self.socket = self._socket_factory()
        self.socket.settimeout(self.connect_timeout)
        try:
            self.socket.connect((self.host, self.port))
        except socket.timeout as exc:
            self._invalidate()
            raise RconTimeoutError(
                f"Timed out connecting to RCON server at {self.host}:{self.port} after {self.connect_timeout}s"
            ) from exc
        except socket.gaierror as exc:
            self._invalidate()
            raise RconConnectionError(f"Failed to resolve hostname {self.host}: {exc}") from exc
        except OSError as exc:
            self._invalidate()
            raise RconConnectionError(
                f"Failed to connect to RCON server at {self.host}:{self.port}: {exc}"
            ) from exc
        self._connected = True
        try:
            self._authenticate()
        except RECOVERABLE_ERRORS:
            self._invalidate()
            raise
        self._log.debug("RCON session established with %s:%s", self.host, self.port)

    def _invalidate(self) -> None:
        self._connected = False
        self._authenticated = False
        if self.socket:
            try:
                self.socket.close()
            except OSError:
                pass
            finally:
                self.socket = None

    def connect(self) -> None:
        """Open and authenticate the session if it is not already open."""
        with self._lock:
            if not self.is_connected():
                self._with_reconnect(lambda: None)

    def _with_reconnect(self, operation):
        """Run ``operation`` on a live session, reconnecting at most once."""
        last_error = None
        for attempt in range(2):
            try:
                if not self.is_connected():
                    self._open_session()
                return operation()
            except RECOVERABLE_ERRORS as exc:
                last_error = exc
                self._invalidate()
                if attempt == 0:
                    self._log.warning("RCON session to %s:%s failed (%s), reconnecting", self.host, self.port, exc)
                    self._sleep(self.retry_delay)
        raise RconUnavailableError(
            f"RCON at {self.host}:{self.port} unavailable after reconnect: {last_error}"
        ) from last_error

    def execute(self, command: str) -> str:
        """
        Execute an RCON command.

        Raises:
            RconPermissionError: If the permission level does not allow the command
            RconUnavailableError: If the session fails again after one reconnect
            ValueError: If command is invalid
        """
        command = self._clean_command(command)
        self.check_permission(command)
        with self._lock:
            return self._with_reconnect(lambda: self._exchange(command))

    def list_players(self) -> List[Player]:
        return parse_player_list(self.execute('#players'))

    def server_settings(self) -> Dict[str, str]:
        return parse_settings(self.execute('#settings'))

    def broadcast(self, message: str) -> str:
        return self.execute(f'say -1 {message}')

    def kick(self, identifier: str, reason: str = '') -> str:
        return self.execute(f'#kick {identifier} {reason}'.strip())

    def ban(self, identifier: str, reason: str = '', duration: int = 0) -> str:
        return self.execute(f'#ban create {identifier} {duration} {reason}'.strip())

    def shutdown(self) -> str:
        return self.execute('#shutdown')

    def drain_notifications(self) -> List[str]:
        with self._lock:
            messages = list(self.notifications)
            self.notifications.clear()
            return messages

    def close(self) -> None:
        """Close the RCON connection and clean up resources."""
        with self._lock:
            self._invalidate()

    def is_connected(self) -> bool:
        return self._connected and self._authenticated and self.socket is not None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

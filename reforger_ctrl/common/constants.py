"""
Constants and exit codes for Reforger Control.
"""

import os


class ExitCodes:
    """Exit codes for different error conditions."""
    OK = 0
    CORRUPTED_DATABASE = 1
    UNKNOWN_CONNECTION = 2
    INVALID_STATE = 3
    RCON_PASSWORD_WRONG = 4
    RCON_COMMAND_EXECUTION_FAILED = 5
    RCON_CONNECTION_FAILED = 6
    RCON_PACKET_ERROR = 7
    RCON_TIMEOUT = 8
    HOST_CONNECTION_FAILED = 9
    COMMAND_FAILED = 10
    INSTALL_FAILED = 11
    DEPENDENCY_CYCLE = 12
    INVALID_CONFIG = 13


class RconPacketTypes:
    """RCON packet type constants."""
    RESPONSE_VALUE = 0
    EXEC_COMMAND = 2
    AUTH_RESPONSE = 2
    AUTH = 3


class A2SPacketTypes:
    """A2S request/response header bytes."""
    INFO_REQUEST = 0x54
    INFO_RESPONSE = 0x49
    PLAYER_REQUEST = 0x55
    PLAYER_RESPONSE = 0x44
    CHALLENGE_RESPONSE = 0x41


# Steam application ids
SERVER_APP_ID = "1874900"  # Arma Reforger Dedicated Server
WORKSHOP_APP_ID = "1874880"  # Arma Reforger (workshop content owner)

STEAMCMD_DOWNLOAD_URL_LINUX = "https://steamcdn-a.akamaihd.net/client/installer/steamcmd_linux.tar.gz"
STEAMCMD_DOWNLOAD_URL_WINDOWS = "https://steamcdn-a.akamaihd.net/client/installer/steamcmd.zip"

DEFAULT_STEAMCMD_PATH_LINUX = "/opt/steamcmd"
DEFAULT_STEAMCMD_PATH_WINDOWS = "C:\\steamcmd"

SERVER_BINARY_LINUX = "ArmaReforgerServer"
SERVER_BINARY_WINDOWS = "ArmaReforgerServer.exe"
SERVER_CONFIG_FILE = "server.json"
SERVER_PID_FILE = ".reforger-server.pid"
SERVER_LOG_FILE = "server-console.log"
PROFILE_DIR = "profile"

DEFAULT_QUERY_PORT = 17777
DEFAULT_GAME_PORT = 2001
DEFAULT_RCON_PORT = 19999
DEFAULT_SSH_PORT = 22

# Local record files (stand-ins for the persistence layer when run standalone)
DEFAULT_STATE_DIR = os.path.join(os.path.expanduser("~"), ".reforger-ctrl")
DEFAULT_CONNECTIONS_PATH = os.path.join(DEFAULT_STATE_DIR, "connections.json")
DEFAULT_MOD_DATABASE_DIR = os.path.join(DEFAULT_STATE_DIR, "mods")
DEFAULT_TASKS_PATH = os.path.join(DEFAULT_STATE_DIR, "tasks.json")
DEFAULT_SERVER_CONFIG_DIR = os.path.join(DEFAULT_STATE_DIR, "server-configs")
DEFAULT_WORKSHOP_CATALOG_PATH = os.path.join(DEFAULT_STATE_DIR, "workshop.json")

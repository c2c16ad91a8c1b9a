"""Reforger Control - Arma Reforger dedicated server management.

Provides:
* Local and SSH executors for running commands on a managed host
* SteamCMD driven install/update with streamed progress
* A2S status queries and an RCON client
* Per-server lifecycle management, status polling and mod sync
* A cron-driven task scheduler
* Thin CLI wrapper (`reforger-ctrl`)

Embedding applications normally go through `ServerManagerRegistry`.
"""

__version__ = "1.0.0"

from .common.config import ControlSettings  # noqa: F401,E402
from .common.logging_config import configure_logging  # noqa: F401,E402
from .core.manager import GameServerManager  # noqa: F401,E402
from .core.registry import ServerManagerRegistry  # noqa: F401,E402
from .core.scheduler import TaskScheduler  # noqa: F401,E402

__all__ = [
    "__version__",
    "configure_logging",
    "ControlSettings",
    "GameServerManager",
    "ServerManagerRegistry",
    "TaskScheduler",
]

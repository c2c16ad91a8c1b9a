"""Reading the dedicated server's console log."""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

# "18:17:35.327  BACKEND   (E): JSON is invalid!"
ENGINE_LINE_RE = re.compile(r"^(\d{2}:\d{2}:\d{2}\.\d{3})\s+(\w+)\s*(\([EWI]\))?\s*:\s*(.*)$")
# "[2024-05-01 18:17:35] [WARNING] message"
DATED_LINE_RE = re.compile(r"^\[(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})\]\s*\[(\w+)\]\s*(.*)$")

_LEVEL_MARKERS = {"(E)": "error", "(W)": "warning", "(I)": "info"}
_QUIET_CATEGORIES = {"DEFAULT", "WORLD"}


@dataclass
class LogEntry:
    message: str
    level: str = "info"
    category: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "category": self.category,
            "message": self.message,
        }


def parse_log_line(line: str, now: Optional[datetime] = None) -> LogEntry:
    now = now or datetime.now()
    match = ENGINE_LINE_RE.match(line)
    if match:
        _clock, category, marker, message = match.groups()
        if marker:
            level = _LEVEL_MARKERS[marker]
        elif category in _QUIET_CATEGORIES:
            level = "debug"
        else:
            level = "info"
        return LogEntry(message=f"[{category}] {message}", level=level, category=category, timestamp=now)

    match = DATED_LINE_RE.match(line)
    if match:
        stamp, level, message = match.groups()
        return LogEntry(message=message, level=level.lower(),
                        timestamp=datetime.strptime(stamp, "%Y-%m-%d %H:%M:%S"))

    return LogEntry(message=line, timestamp=now)


def parse_log_lines(text: str) -> List[LogEntry]:
    return [parse_log_line(line) for line in text.splitlines() if line.strip()]


def tail_command(path: str, lines: int, windows: bool = False) -> str:
    lines = max(1, int(lines))
    if windows:
        return f"powershell -NoProfile -Command \"Get-Content '{path}' -Tail {lines}\""
    return f"tail -n {lines} {shlex.quote(path)}"


# Each server run writes profile/logs/logs_<date>_<time>/{console,error,script}.log
LOG_DIR_PREFIX = "logs_"
LOG_FILE_SUFFIX = ".log"


def check_log_name(name: str) -> str:
    """Reject anything but a plain entry name inside the logs directory."""
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise ValueError(f"Invalid log name: {name!r}")
    return name


def list_dirs_command(logs_root: str, windows: bool = False) -> str:
    """Run directories under ``logs_root``, newest first."""
    if windows:
        return (
            f"powershell -NoProfile -Command \"Get-ChildItem '{logs_root}' -Directory | "
            "Sort-Object LastWriteTime -Descending | Select-Object -ExpandProperty Name\""
        )
    return f"cd {shlex.quote(logs_root)} && ls -1td {LOG_DIR_PREFIX}*"


def list_files_command(log_dir: str, windows: bool = False) -> str:
    if windows:
        return f"powershell -NoProfile -Command \"Get-ChildItem '{log_dir}' -File | Select-Object -ExpandProperty Name\""
    return f"ls -1 {shlex.quote(log_dir)}"


def parse_listing(output: str, prefix: str = "", suffix: str = "") -> List[str]:
    names = [line.strip().rstrip("/") for line in output.splitlines()]
    return [name for name in names if name and name.startswith(prefix) and name.endswith(suffix)]

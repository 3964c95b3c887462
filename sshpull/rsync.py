"""Building rsync command lines and reading rsync's output."""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Iterator
from datetime import date

from .config import Config
from .logger import get_logger
from .ssh_client import SSHError, expand_key_path

LOCAL_RSYNC = "/usr/local/bin/rsync"

_BASE_OPTIONS = (
    "--recursive",
    "--links",
    "--times",
    "--group",
    "--owner",
    "--devices",
    "--specials",
    "--compress",
    "--backup",
    "--stats",
    "--no-perms",
    "--no-acls",
    "-vv",
    "--progress",
    "--info=progress2",
)

_HAN = (
    "\u2e80-\u2e99\u2e9b-\u2ef3\u2f00-\u2fd5\u3005\u3007\u3021-\u3029"
    "\u3038-\u303b\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufa6d\ufa70-\ufad9"
    "\U00020000-\U0003134f"
)
_FILE_NAME_RE = re.compile(f"[{_HAN}A-Za-z0-9_./\\-()\\[\\] \\t\\n\\f\\r]+")
_PERCENT_RE = re.compile(r"([0-9]+)%")

log = get_logger()


def build_rsync_options(config: Config, today: date | None = None) -> list[str]:
    """rsync options for a mirror, with a per-day backup directory."""
    day = today or date.today()
    backup_dir = os.path.join(config.backup_dir, day.strftime("%Y%m%d"))
    options = list(_BASE_OPTIONS)
    options.append("--backup-dir=" + os.path.abspath(backup_dir))
    if config.bandwidth_limit:
        options.append("--bwlimit=" + config.bandwidth_limit)
    if config.enable_delete:
        options.append("--delete")
    options.append("--exclude=backup")
    return options


def build_ssh_options(config: Config) -> list[str]:
    """Options for the ssh command rsync runs as its transport."""
    options: list[str] = []
    if config.ssh_port not in ("22", ""):
        options += ["-p", config.ssh_port]
    try:
        key_path = expand_key_path(config.ssh_key)
    except SSHError:
        key_path = config.ssh_key
    if key_path and os.path.exists(key_path):
        options += ["-i", key_path]
    options += ["-o", f"ConnectTimeout={config.connect_timeout}"]
    options += ["-o", "BatchMode=yes"]
    return options


def remote_spec(config: Config) -> str:
    """The remote directory as an rsync source, with a trailing slash."""
    return f"{config.remote_user}@{config.remote_host}:{config.remote_path}/"


def local_spec(config: Config) -> str:
    """The local directory, normalised, with a trailing separator."""
    return os.path.normpath(config.local_path) + os.sep


def find_rsync() -> str:
    """Prefer a locally installed rsync over the one on PATH."""
    return LOCAL_RSYNC if os.path.exists(LOCAL_RSYNC) else "rsync"


def split_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    """Split a byte stream on CR or LF, skipping empty lines."""
    pending = bytearray()
    for chunk in chunks:
        for line in re.split(rb"[\r\n]", bytes(chunk)):
            pending += line
            break
        parts = re.split(rb"[\r\n]", bytes(chunk))
        for part in parts[1:]:
            if pending:
                yield pending.decode("utf-8", errors="replace")
            pending = bytearray(part)
    if pending:
        yield pending.decode("utf-8", errors="replace")


class ProgressTracker:
    """Follows rsync --progress output and reports each rise in a file's percentage."""

    def __init__(self) -> None:
        self.current_file = ""
        self.percents: dict[str, int] = {}

    def feed(self, line: str) -> tuple[str, int] | None:
        """Take one output line; return (file, percent) when the percentage rose."""
        line = line.strip()
        has_percent = _PERCENT_RE.search(line)
        if (
            line
            and _FILE_NAME_RE.fullmatch(line)
            and not has_percent
            and "kB/s" not in line
            and "MB/s" not in line
        ):
            self.current_file = line
            self.percents.setdefault(line, -1)
            return None
        if has_percent and self.current_file:
            percent = int(has_percent.group(1))
            if percent > self.percents.get(self.current_file, -1):
                self.percents[self.current_file] = percent
                log.info("%s: %d%%", self.current_file, percent)
                return self.current_file, percent
        return None
"""PID lock files that keep two sync runs from overlapping."""

from __future__ import annotations

import os
import re
from pathlib import Path

from .logger import get_logger

_PID_RE = re.compile(r"[+-]?\d+")

log = get_logger()


class LockError(RuntimeError):
    """Raised when a lock is held by a live process or cannot be written."""


def process_exists(pid: int) -> bool:
    """Whether a process with this PID exists and can be signalled."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except (OSError, OverflowError):
        return False
    return True


def _read_pid(path: Path) -> int:
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return 0
    if not _PID_RE.fullmatch(text):
        return 0
    return int(text)


class PidLock:
    """A lock file holding the PID of the process that owns it."""

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)

    def acquire(self) -> int:
        """Take the lock, clearing it first if its owner is gone; return our PID."""
        if self.path.exists():
            pid = _read_pid(self.path)
            if process_exists(pid):
                raise LockError(f"同步已在运行中，PID: {pid}")
            try:
                self.path.unlink()
            except OSError:
                pass
        pid = os.getpid()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(str(pid), encoding="utf-8")
        except OSError as exc:
            raise LockError(f"创建锁文件失败: {exc}") from exc
        log.info("创建锁文件: %s, PID: %s", self.path, pid)
        return pid

    def release(self) -> None:
        """Remove the lock file if it exists."""
        if self.path.exists():
            try:
                self.path.unlink()
            except OSError:
                return
            log.info("清理锁文件: %s", self.path)

    def __enter__(self) -> PidLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
"""Running rsync between the remote directory and the local mirror."""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from .config import Config
from .locks import LockError, PidLock
from .logger import get_logger
from .rsync import (
    ProgressTracker,
    build_rsync_options,
    build_ssh_options,
    find_rsync,
    local_spec,
    remote_spec,
    split_lines,
)
from .ssh_client import SSHClient, SSHError

log = get_logger()

_MISSING_MARKERS = ("No such file or directory", "没有那个文件或目录")
_UNKNOWN_SIZE = "未知"


class SyncError(RuntimeError):
    """Raised when preparing or running a sync fails."""


def _raise(exc: OSError) -> None:
    raise exc


def _count_files(root: str, strict: bool) -> int:
    """Count every non-directory entry below root; symlinks count as files.

    With strict set, a directory that cannot be read raises OSError;
    otherwise it is skipped.
    """
    if not os.path.isdir(root):
        return 1 if os.path.lexists(root) else 0

    count = 0
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise if strict else None):
        count += len(filenames)
        count += sum(1 for name in dirnames if os.path.islink(os.path.join(dirpath, name)))
    return count


def _dir_size(path: str) -> str:
    try:
        result = subprocess.run(
            ["du", "-sh", path], stdout=subprocess.PIPE, stderr=subprocess.DEVNULL, check=True
        )
    except (OSError, subprocess.CalledProcessError):
        return _UNKNOWN_SIZE
    parts = result.stdout.decode("utf-8", errors="replace").split()
    return parts[0] if parts else _UNKNOWN_SIZE


def _exit_reason(returncode: int) -> str:
    if returncode >= 0:
        return f"exit status {returncode}"
    return f"killed by signal {-returncode}"


def _start(args: list[str], new_session: bool = False) -> subprocess.Popen:
    try:
        return subprocess.Popen(
            [find_rsync(), *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=new_session,
        )
    except OSError as exc:
        raise SyncError(f"启动rsync失败: {exc}") from exc


def _pump(proc: subprocess.Popen, handle_line: Callable[[str], object]) -> threading.Thread:
    """Read the process output in the background, one line at a time."""

    def chunks() -> Iterable[bytes]:
        stream = proc.stdout
        while True:
            try:
                data = stream.read1(4096)
            except (OSError, ValueError):
                return
            if not data:
                return
            yield data

    def run() -> None:
        for line in split_lines(chunks()):
            handle_line(line)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (OSError, AttributeError):
        try:
            proc.kill()
        except OSError:
            pass


def _log_line(line: str) -> None:
    log.info("%s", line)


class Syncer:
    """Mirrors the configured remote directory into the local one."""

    paths_timeout: float = 60.0
    watch_interval: float = 2.0

    def __init__(self, config: Config):
        self.config = config
        self.ssh_client = SSHClient(config)
        self.instance_lock = PidLock(config.instance_lock_file)
        self.sync_lock = PidLock(config.sync_lock_file)

    def _lock(self, lock_type: str) -> PidLock:
        return self.instance_lock if lock_type == "instance" else self.sync_lock

    def create_lock(self, lock_type: str) -> int:
        """Take the "instance" lock or, for any other type, the sync lock."""
        return self._lock(lock_type).acquire()

    def remove_lock(self, lock_type: str) -> None:
        """Release the "instance" lock or, for any other type, the sync lock."""
        self._lock(lock_type).release()

    def check_local_safety(self) -> int:
        """Report what the local directory already holds; return its file count."""
        local = self.config.local_path
        if not os.path.exists(local):
            log.info("本地目录不存在，将创建: %s", local)
            return 0
        try:
            file_count = _count_files(local, strict=True)
        except OSError as exc:
            raise SyncError(f"统计本地文件失败: {exc}") from exc

        size = _dir_size(local)
        log.info("本地目录已存在: %s", local)
        log.info("现有文件数量: %d", file_count)
        log.info("目录大小: %s", size)
        if file_count > 0:
            log.warning("⚠️  警告: 本地目录中已有 %d 个文件", file_count)
            log.warning("目录大小: %s", size)
        return file_count

    def _make_dirs(self) -> None:
        try:
            os.makedirs(self.config.local_path, mode=0o755, exist_ok=True)
        except OSError as exc:
            raise SyncError(f"创建本地目录失败: {exc}") from exc
        try:
            os.makedirs(self.config.backup_dir, mode=0o755, exist_ok=True)
        except OSError as exc:
            raise SyncError(f"创建备份目录失败: {exc}") from exc

    def _connect(self) -> None:
        try:
            self.ssh_client.connect()
        except SSHError as exc:
            raise SyncError(f"连接SSH失败: {exc}") from exc

    def _base_args(self) -> list[str]:
        ssh_command = " ".join(["ssh", *build_ssh_options(self.config)])
        return [*build_rsync_options(self.config), "-e", ssh_command]

    def perform_sync(self, cancel: threading.Event | None = None) -> None:
        """Pull the remote directory into the local one, reporting progress."""
        log.info("开始从远程同步数据到本地...")
        self._make_dirs()

        log.info("同步前统计:")
        log.info("远程路径: %s", self.config.remote_path)
        log.info("本地路径: %s", self.config.local_path)

        self._connect()
        try:
            try:
                file_count, size = self.ssh_client.get_remote_stats()
            except SSHError:
                pass
            else:
                log.info("远程文件数量: %d", file_count)
                log.info("远程目录大小: %s", size)

            args = [*self._base_args(), remote_spec(self.config), local_spec(self.config)]
            log.info("执行rsync命令: rsync %s", " ".join(args))

            proc = _start(args)
            tracker = ProgressTracker()
            reader = _pump(proc, tracker.feed)
            done = threading.Event()

            def kill_on_cancel() -> None:
                if cancel is None:
                    return
                while not done.is_set():
                    if cancel.wait(0.1):
                        proc.kill()
                        return

            watcher = threading.Thread(target=kill_on_cancel, daemon=True)
            watcher.start()
            returncode = proc.wait()
            done.set()
            watcher.join()
            reader.join(timeout=1)
            if returncode != 0:
                raise SyncError(f"同步失败: {_exit_reason(returncode)}")
        finally:
            self.ssh_client.close()

        log.info("同步成功完成")
        self._show_post_sync_stats()
        self.cleanup_old_backups()

    def _show_post_sync_stats(self) -> None:
        log.info("同步后统计:")
        local = self.config.local_path
        if os.path.exists(local):
            log.info("本地文件数量: %d", _count_files(local, strict=False))
            log.info("本地目录大小: %s", _dir_size(local))

    def cleanup_old_backups(self, now: datetime | None = None) -> int:
        """Remove backup directories older than the retention period; return how many."""
        root = self.config.backup_dir
        if not os.path.exists(root):
            return 0
        log.info("清理旧备份文件...")
        cutoff = (now or datetime.now()) - timedelta(days=self.config.backup_retention)
        cutoff_ts = cutoff.timestamp()
        cleaned = 0
        for dirpath, dirnames, _ in os.walk(root):
            kept = []
            for name in sorted(dirnames):
                path = os.path.join(dirpath, name)
                if os.path.islink(path):
                    continue
                try:
                    old = os.lstat(path).st_mtime < cutoff_ts
                except OSError:
                    continue
                if old:
                    try:
                        shutil.rmtree(path)
                    except OSError:
                        kept.append(name)
                        continue
                    cleaned += 1
                else:
                    kept.append(name)
            dirnames[:] = kept
        if cleaned > 0:
            log.info("已清理 %d 个旧备份目录", cleaned)
        return cleaned

    def sync(self, cancel: threading.Event | None = None) -> None:
        """Take the sync lock, check both ends, then run a full pull."""
        self.create_lock("sync")
        try:
            self.ssh_client.check_network()
            self.ssh_client.test_connection()
            self.ssh_client.check_remote_path()
            self.check_local_safety()
            self.perform_sync(cancel)
        finally:
            self.ssh_client.close()

    def sync_paths(self, paths: list[str], cancel: threading.Event | None = None) -> None:
        """Push the given local paths to the remote directory, with a time limit."""
        if not paths:
            return
        self.create_lock("sync")
        try:
            self._sync_paths(paths, cancel)
        finally:
            self.ssh_client.close()
            self.remove_lock("sync")

    def _sync_paths(self, paths: list[str], cancel: threading.Event | None) -> None:
        self.ssh_client.check_network()
        self.ssh_client.test_connection()
        try:
            self.ssh_client.check_remote_path()
        except SSHError as exc:
            log.warning("远程目录不存在或不可访问，终止本次同步: %s", exc)
            return

        valid = []
        for path in paths:
            if os.path.exists(path):
                valid.append(path)
            else:
                log.warning("变动路径不存在，已跳过: %s", path)
        if not valid:
            log.info("无有效变动路径，跳过本次同步")
            return

        args = [*self._base_args(), *valid, remote_spec(self.config)]
        log.info("执行rsync命令: rsync %s", " ".join(args))

        proc = _start(args, new_session=True)
        reader = _pump(proc, _log_line)
        stop = threading.Event()
        state = {"cancelled": False, "killed": False}

        def watch() -> None:
            next_check = time.monotonic() + self.watch_interval
            while not stop.is_set():
                if cancel is not None and cancel.is_set():
                    log.warning("同步任务收到外部中断信号，立即终止rsync进程组")
                    _kill_group(proc)
                    state["cancelled"] = True
                    try:
                        code = proc.wait(timeout=2)
                        log.warning("kill后Wait返回: %s", _exit_reason(code))
                    except subprocess.TimeoutExpired:
                        log.warning("kill后Wait超时，可能存在僵尸进程")
                    return
                if time.monotonic() >= next_check:
                    next_check += self.watch_interval
                    for path in valid:
                        if not os.path.exists(path):
                            log.warning("同步过程中本地目录消失，立即终止rsync: %s", path)
                            _kill_group(proc)
                            state["killed"] = True
                            return
                    try:
                        self.ssh_client.check_remote_path()
                    except SSHError as exc:
                        log.warning("同步过程中远程目录消失，立即终止rsync: %s", exc)
                        _kill_group(proc)
                        state["killed"] = True
                        return
                stop.wait(0.1)

        watcher = threading.Thread(target=watch, daemon=True)
        watcher.start()

        timed_out = False
        try:
            returncode = proc.wait(timeout=self.paths_timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            proc.kill()
            returncode = proc.wait()
        stop.set()
        watcher.join()
        reader.join(timeout=1)

        if state["cancelled"]:
            log.warning("同步任务被外部中断，协程已立即退出")
            return
        if state["killed"]:
            log.warning("同步过程中本地或远程目录消失，rsync已被立即终止，主循环恢复监听")
            return
        if timed_out:
            _kill_group(proc)
            log.error(
                "同步超时（%ss），rsync进程组已被强制终止，建议检查目录状态！", self.paths_timeout
            )
            return
        if returncode != 0:
            reason = _exit_reason(returncode)
            if any(marker in reason for marker in _MISSING_MARKERS):
                log.warning("同步过程中有目录被重命名或删除，rsync报错: %s", reason)
                return
            log.error("同步失败: %s", reason)
            raise SyncError(reason)
        log.info("同步成功完成")

    def sync_pull(self, cancel: threading.Event | None = None) -> None:
        """Pull the whole remote directory; return quietly if cancelled."""
        log.info("开始拉取远程目录到本地...")
        try:
            self.create_lock("sync")
        except LockError as exc:
            log.error("createLock失败: %s", exc)
            raise
        try:
            try:
                self._make_dirs()
            except SyncError as exc:
                log.error("%s", exc)
                raise
            try:
                self._connect()
            except SyncError as exc:
                log.error("%s", exc)
                raise
            try:
                self._pull(cancel)
            finally:
                self.ssh_client.close()
        finally:
            self.remove_lock("sync")

    def _pull(self, cancel: threading.Event | None) -> None:
        if not self._remote_directory_exists():
            log.warning(
                "远程目录不存在或无法访问: 远程目录不存在或无法访问: %s", self.config.remote_path
            )
            return

        args = [*self._base_args(), remote_spec(self.config), local_spec(self.config)]
        log.info("执行rsync命令: rsync %s", " ".join(args))

        try:
            proc = _start(args)
        except SyncError as exc:
            log.error("%s", exc)
            raise
        _pump(proc, _log_line)

        while True:
            try:
                returncode = proc.wait(timeout=0.1)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    log.warning("SyncPull收到context取消信号，尝试杀死rsync进程")
                    proc.kill()
                    return

        if returncode != 0:
            reason = _exit_reason(returncode)
            if any(marker in reason for marker in _MISSING_MARKERS):
                log.warning("远程目录不存在，rsync报错: %s", reason)
                return
            log.error("rsync拉取失败: %s", reason)
            raise SyncError(f"rsync拉取失败: {reason}")
        log.info("拉取远程目录到本地完成")

    def _remote_directory_exists(self) -> bool:
        path = self.config.remote_path
        checks = (
            f"test -d '{path}'",
            f"ls -ld '{path}' 2>/dev/null",
            f"stat '{path}' 2>/dev/null",
        )
        for number, command in enumerate(checks, start=1):
            try:
                self.ssh_client.run(command)
            except SSHError as exc:
                log.debug("检查方法%d失败: %s", number, exc)
                continue
            log.info("远程目录存在: %s", path)
            return True
        return False


def run_remote_shell(config: Config, command: str) -> bytes:
    """Open a fresh SSH connection, run one command and return its output."""
    client = SSHClient(config)
    client.connect()
    try:
        return client.output(command)
    finally:
        client.close()
"""Watch loops that notice changes and trigger a sync."""

from __future__ import annotations

import hashlib
import os
import subprocess
import threading

from .config import Config
from .hashing import (
    calculate_hash,
    listing_command,
    listing_hash,
    read_hash_file,
    write_hash_file,
)
from .locks import LockError
from .logger import get_logger
from .ssh_client import SSHClient, SSHError
from .syncer import Syncer, SyncError

ZERO_HASH = bytes(16)

_HASH_FAILURES = (SSHError, subprocess.CalledProcessError, OSError)
_SYNC_FAILURES = (SSHError, SyncError, LockError, subprocess.CalledProcessError, OSError)

log = get_logger()


def _store_hash(hash_file: str | os.PathLike, digest: bytes) -> None:
    try:
        write_hash_file(hash_file, digest)
    except OSError as exc:
        log.error("保存hash文件失败: %s", exc)


def _lenient_listing_hash(path: str) -> bytes:
    """Hash of the listing even when ls exits with an error."""
    try:
        return listing_hash(path)
    except subprocess.CalledProcessError as exc:
        return hashlib.md5(exc.output or b"").digest()
    except OSError:
        return hashlib.md5(b"").digest()


def _initial_listing_hash(local_path: str, hash_file: str | os.PathLike) -> bytes:
    """The stored hash, or a freshly computed one saved to the hash file."""
    stored = read_hash_file(hash_file)
    if stored is not None:
        return stored
    log.info("未检测到本地hash，正在计算本地目录hash...")
    try:
        digest = listing_hash(local_path)
    except (subprocess.CalledProcessError, OSError) as exc:
        log.error("本地目录hash计算失败: %s", exc)
        return ZERO_HASH
    log.info("本地目录hash已生成")
    _store_hash(hash_file, digest)
    return digest


def watch_local(config: Config, syncer: Syncer, stop: threading.Event) -> None:
    """Poll the local listing and push it whenever it changes, pre-empting older pushes."""
    log.info("=== 启动hash监听与抢占式自动同步 ===")
    interval = config.remote_watch_interval
    hash_file = config.hash_file
    last = _initial_listing_hash(config.local_path, hash_file)
    task: threading.Thread | None = None
    task_cancel: threading.Event | None = None

    def push(cancel: threading.Event) -> None:
        nonlocal last
        try:
            syncer.sync_paths([config.local_path], cancel)
        except _SYNC_FAILURES as exc:
            log.error("自动同步失败: %s", exc)
            return
        log.info("自动同步完成，重新计算并保存本地hash")
        digest = _lenient_listing_hash(config.local_path)
        _store_hash(hash_file, digest)
        last = digest
        log.info("本地目录最新hash: %s", digest.hex())

    try:
        while not stop.is_set():
            try:
                current = listing_hash(config.local_path)
            except (subprocess.CalledProcessError, OSError) as exc:
                log.error("监听hash计算失败: %s", exc)
                stop.wait(interval)
                continue
            log.info("远程目录当前hash: %s", current.hex())
            if current != last:
                log.info("监听到本地hash变化，准备抢占式同步...")
                if task is not None and task.is_alive():
                    log.info("已有同步任务在进行，取消旧同步...")
                    if task_cancel is not None:
                        task_cancel.set()
                    task.join()
                task_cancel = threading.Event()
                task = threading.Thread(target=push, args=(task_cancel,), daemon=True)
                task.start()
            stop.wait(interval)
    finally:
        if task_cancel is not None:
            task_cancel.set()
    log.info("监听主循环退出")


def watch_remote(
    config: Config, syncer: Syncer, ssh_client: SSHClient, stop: threading.Event
) -> None:
    """Poll the remote listing and run a full sync whenever it differs from the last hash."""
    log.info("=== 启动远程目录变动监听与自动同步 ===")
    interval = config.remote_watch_interval
    hash_file = config.hash_file
    last = _initial_listing_hash(config.local_path, hash_file)

    try:
        ssh_client.connect()
    except SSHError as exc:
        log.error("SSH连接失败: %s", exc)
        raise

    try:
        while not stop.is_set():
            if not ssh_client.is_connected():
                ssh_client.close()
                try:
                    ssh_client.connect()
                except SSHError as exc:
                    log.error("SSH重连失败: %s", exc)
                    stop.wait(interval)
                    continue
                log.info("SSH重连成功")

            try:
                snapshot = ssh_client.output(listing_command(config.remote_path))
            except SSHError as exc:
                log.error("获取远程目录快照失败: %s", exc)
                stop.wait(interval)
                continue

            current = hashlib.md5(snapshot).digest()
            if current != last:
                log.info("本地与远程hash不一致，开始自动同步...")
                try:
                    syncer.sync(stop)
                except _SYNC_FAILURES as exc:
                    log.error("自动同步失败: %s", exc)
                else:
                    log.info("自动同步完成，重新计算并保存本地hash")
                    digest = _lenient_listing_hash(config.local_path)
                    _store_hash(hash_file, digest)
                    last = digest
                    log.info("本地目录最新hash: %s", digest.hex())
                syncer.remove_lock("sync")
            stop.wait(interval)
    finally:
        ssh_client.close()


class RemoteHashWatcher:
    """Watches the remote tree's hash and pulls it, cancelling any pull in flight."""

    def __init__(
        self,
        config: Config,
        ssh_client: SSHClient,
        syncer: Syncer,
        hash_file: str | os.PathLike,
    ):
        self.config = config
        self.ssh_client = ssh_client
        self.syncer = syncer
        self.hash_file = hash_file
        self.last_remote_hash = ZERO_HASH
        self.last_local_hash = ZERO_HASH
        self.is_syncing = False
        self._lock = threading.Lock()
        self._cancel: threading.Event | None = None
        self._thread: threading.Thread | None = None

    def _remote_dir_exists(self) -> bool:
        try:
            self.ssh_client.run(f"test -d '{self.config.remote_path}'")
        except SSHError:
            return False
        return True

    def _remote_hash(self) -> bytes:
        return calculate_hash(self.config.remote_path, True, self.ssh_client)

    def _local_hash(self) -> bytes:
        return calculate_hash(self.config.local_path, False)

    def _start_sync(self, target: bytes) -> None:
        """Start a pull task; the caller holds the lock."""
        cancel = threading.Event()
        self._cancel = cancel
        self.is_syncing = True
        thread = threading.Thread(target=self._sync_task, args=(cancel, target), daemon=True)
        self._thread = thread
        thread.start()

    def _wait_for_sync(self) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def _sync_task(self, cancel: threading.Event, target: bytes) -> None:
        try:
            self._pull_and_verify(cancel, target)
        except Exception as exc:  # keep the watcher alive whatever the task hits
            log.error("同步协程发生panic: %s", exc)
        finally:
            with self._lock:
                if self._cancel is cancel:
                    self.is_syncing = False
            log.debug("同步协程结束，isSyncing已复位")

    def _pull_and_verify(self, cancel: threading.Event, target: bytes) -> None:
        log.info("同步任务开始执行，目标hash: %s", target.hex())
        try:
            self.syncer.sync_pull(cancel)
        except _SYNC_FAILURES as exc:
            if cancel.is_set():
                log.info("同步被取消，这是正常行为")
                return
            log.error("同步失败: %s", exc)
            return

        log.info("同步完成，重新计算并保存本地hash")
        try:
            local = self._local_hash()
        except _HASH_FAILURES as exc:
            log.error("重新计算本地hash失败: %s", exc)
            return
        _store_hash(self.hash_file, local)
        self.last_local_hash = local
        log.info("本地目录最新hash: %s", local.hex())

        try:
            remote = self._remote_hash()
        except _HASH_FAILURES as exc:
            log.error("验证远程hash失败: %s", exc)
            return
        if local != remote:
            log.warning("同步后hash不一致！本地: %s, 远程: %s", local.hex(), remote.hex())
            return
        log.info("✅ 同步验证成功，本地和远程hash一致: %s", local.hex())
        with self._lock:
            self.last_remote_hash = target
        log.debug("同步协程完成，lastRemoteHash已更新: %s", target.hex())

    def initial_compare(self) -> bool:
        """Compare remote and local hashes once; return True if a pull was started."""
        if not self._remote_dir_exists():
            log.warning("远程目录不存在，跳过首次同步: %s", self.config.remote_path)
            return False
        try:
            remote = self._remote_hash()
        except _HASH_FAILURES as exc:
            log.error("首次远程hash计算失败: %s", exc)
            return False
        try:
            local = self._local_hash()
        except _HASH_FAILURES as exc:
            log.error("首次本地hash计算失败: %s", exc)
            return False
        log.info("首次对比 - 远程目录hash: %s, 本地目录hash: %s", remote.hex(), local.hex())
        if remote == local:
            log.info("首次对比 - 远程/本地hash一致，无需同步")
            return False

        log.info("首次对比发现hash不一致，启动同步协程...")
        started = False
        with self._lock:
            if not self.is_syncing:
                log.info("启动首次同步任务，目标hash: %s", remote.hex())
                self._start_sync(remote)
                started = True
        log.info("首次同步任务已启动")
        return started

    def poll_once(self) -> bool:
        """Check the remote hash once; return True if a new pull was started."""
        log.debug("监听循环开始: isSyncing=%s", self.is_syncing)
        if not self._remote_dir_exists():
            log.warning("远程目录不存在: %s", self.config.remote_path)
            if self.cancel_sync():
                log.info("远程目录不存在，已停止当前同步协程，isSyncing已复位")
            return False
        try:
            current = self._remote_hash()
        except _HASH_FAILURES as exc:
            log.error("监听协程远程hash计算失败: %s", exc)
            return False
        log.debug(
            "监听协程 - 当前远程hash: %s, 上次远程hash: %s",
            current.hex(),
            self.last_remote_hash.hex(),
        )
        if current == self.last_remote_hash:
            log.debug("远程hash无变化，继续监听")
            return False

        log.info("检测到远程hash变化，停止当前同步协程并启动新同步协程")
        if self.cancel_sync():
            log.info("已停止当前同步协程")
        log.info("等待旧同步协程完全退出...")
        self._wait_for_sync()
        log.info("旧同步协程已完全退出")
        with self._lock:
            self.last_remote_hash = current
            log.info("启动新同步任务，目标hash: %s", current.hex())
            self._start_sync(current)
        log.info("新同步任务已启动")
        return True

    def run(self, stop: threading.Event) -> None:
        """Poll until stop is set, then cancel any pull in flight."""
        interval = self.config.remote_watch_interval
        try:
            while not stop.is_set():
                self.poll_once()
                stop.wait(interval)
            log.info("监听协程收到退出信号")
        finally:
            self.cancel_sync()

    def cancel_sync(self) -> bool:
        """Ask the running pull to stop; return True if one was running."""
        with self._lock:
            if not self.is_syncing:
                return False
            if self._cancel is not None:
                self._cancel.set()
            self.is_syncing = False
            return True
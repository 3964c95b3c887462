import os
import socket
import threading
from datetime import datetime, timedelta

import pytest

from sshpull.config import Config
from sshpull.locks import LockError
from sshpull.ssh_client import SSHError
from sshpull.syncer import SyncError, Syncer, run_remote_shell


def _closed_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def config(tmp_path):
    return Config(
        remote_user="user",
        remote_host="127.0.0.1",
        remote_path="/srv/data",
        local_path=str(tmp_path / "local"),
        backup_dir=str(tmp_path / "backup"),
        instance_lock_file=str(tmp_path / "lock" / "instance.lock"),
        sync_lock_file=str(tmp_path / "lock" / "sync.lock"),
        ssh_port=str(_closed_port()),
        connect_timeout=2,
        backup_retention=7,
    )


def test_create_lock_writes_pid_to_matching_file(config):
    syncer = Syncer(config)
    pid = syncer.create_lock("instance")
    assert pid == os.getpid()
    with open(config.instance_lock_file) as handle:
        assert handle.read() == str(os.getpid())
    assert not os.path.exists(config.sync_lock_file)


def test_other_lock_types_use_sync_lock(config):
    syncer = Syncer(config)
    assert syncer.create_lock("sync") == os.getpid()
    assert os.path.exists(config.sync_lock_file)
    assert not os.path.exists(config.instance_lock_file)
    syncer.remove_lock("anything")
    assert not os.path.exists(config.sync_lock_file)


def test_second_lock_held_by_live_process_fails(config):
    syncer = Syncer(config)
    syncer.create_lock("sync")
    with pytest.raises(LockError):
        Syncer(config).create_lock("sync")


def test_stale_lock_is_replaced(config):
    os.makedirs(os.path.dirname(config.sync_lock_file))
    with open(config.sync_lock_file, "w") as handle:
        handle.write("0")
    assert Syncer(config).create_lock("sync") == os.getpid()


def test_check_local_safety_missing_dir(config):
    assert Syncer(config).check_local_safety() == 0


def test_check_local_safety_counts_files(config):
    local = config.local_path
    os.makedirs(os.path.join(local, "sub"))
    for name in ("a.txt", os.path.join("sub", "b.txt"), os.path.join("sub", "c.txt")):
        with open(os.path.join(local, name), "w") as handle:
            handle.write("x")
    assert Syncer(config).check_local_safety() == 3


def test_cleanup_old_backups_removes_only_old(config):
    backup = config.backup_dir
    old_dir = os.path.join(backup, "old")
    new_dir = os.path.join(backup, "new")
    os.makedirs(os.path.join(old_dir, "nested"))
    os.makedirs(new_dir)
    now = datetime.now()
    old_ts = (now - timedelta(days=30)).timestamp()
    os.utime(os.path.join(old_dir, "nested"), (old_ts, old_ts))
    os.utime(old_dir, (old_ts, old_ts))

    removed = Syncer(config).cleanup_old_backups(now)
    assert removed == 1
    assert not os.path.exists(old_dir)
    assert os.path.isdir(new_dir)
    assert os.path.isdir(backup)


def test_cleanup_without_backup_dir(config):
    assert Syncer(config).cleanup_old_backups(datetime.now()) == 0


def test_sync_paths_empty_does_nothing(config):
    Syncer(config).sync_paths([], threading.Event())
    assert not os.path.exists(config.sync_lock_file)
    # No lock was left behind, so a fresh lock can be taken by this process.
    assert Syncer(config).create_lock("sync") == os.getpid()


def test_sync_network_failure_keeps_lock(config):
    with pytest.raises(SSHError):
        Syncer(config).sync()
    with open(config.sync_lock_file) as handle:
        assert handle.read() == str(os.getpid())


def test_sync_paths_failure_releases_lock(config, tmp_path):
    target = tmp_path / "file.txt"
    target.write_text("data")
    with pytest.raises(SSHError):
        Syncer(config).sync_paths([str(target)])
    assert not os.path.exists(config.sync_lock_file)


def test_sync_pull_lock_held_raises_and_keeps_lock(config):
    os.makedirs(os.path.dirname(config.sync_lock_file))
    with open(config.sync_lock_file, "w") as handle:
        handle.write(str(os.getpid()))
    with pytest.raises(LockError):
        Syncer(config).sync_pull()
    with open(config.sync_lock_file) as handle:
        assert handle.read() == str(os.getpid())


def test_sync_pull_bad_backup_dir_releases_lock(config):
    config.backup_dir = ""
    with pytest.raises(SyncError):
        Syncer(config).sync_pull()
    assert os.path.isdir(config.local_path)
    assert not os.path.exists(config.sync_lock_file)


def test_sync_pull_connection_failure(config):
    with pytest.raises(SyncError, match="连接SSH失败"):
        Syncer(config).sync_pull()
    assert os.path.isdir(config.backup_dir)
    assert not os.path.exists(config.sync_lock_file)


def test_perform_sync_creates_dirs_before_connecting(config):
    with pytest.raises(SyncError, match="连接SSH失败"):
        Syncer(config).perform_sync()
    assert os.path.isdir(config.local_path)
    assert os.path.isdir(config.backup_dir)


def test_run_remote_shell_unreachable(config):
    with pytest.raises(SSHError):
        run_remote_shell(config, "echo hi")
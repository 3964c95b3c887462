import os
import subprocess
import sys

import pytest

from sshpull.locks import LockError, PidLock, process_exists


def test_process_exists_for_self():
    assert process_exists(os.getpid()) is True


@pytest.mark.parametrize("pid", [0, -1])
def test_process_exists_rejects_non_positive(pid):
    assert process_exists(pid) is False


def test_process_exists_for_finished_child():
    child = subprocess.Popen([sys.executable, "-c", "pass"])
    child.wait()
    assert process_exists(child.pid) is False


def test_acquire_writes_pid_and_creates_parents(tmp_path):
    path = tmp_path / "lock" / "sync.lock"
    lock = PidLock(path)
    pid = lock.acquire()
    assert pid == os.getpid()
    assert path.read_text() == str(os.getpid())


def test_release_removes_file(tmp_path):
    path = tmp_path / "sync.lock"
    lock = PidLock(path)
    lock.acquire()
    lock.release()
    assert not path.exists()


def test_release_without_file_leaves_nothing(tmp_path):
    path = tmp_path / "missing.lock"
    PidLock(path).release()
    assert not path.exists()


def test_live_owner_blocks_acquire(tmp_path):
    path = tmp_path / "sync.lock"
    path.write_text(str(os.getpid()))
    with pytest.raises(LockError):
        PidLock(path).acquire()
    assert path.read_text() == str(os.getpid())


@pytest.mark.parametrize("content", ["0", "garbage", ""])
def test_stale_lock_is_replaced(tmp_path, content):
    path = tmp_path / "sync.lock"
    path.write_text(content)
    PidLock(path).acquire()
    assert path.read_text() == str(os.getpid())


def test_context_manager_acquires_and_releases(tmp_path):
    path = tmp_path / "instance.lock"
    with PidLock(path) as lock:
        assert lock.path.read_text() == str(os.getpid())
    assert not path.exists()


def test_second_acquire_by_same_process_fails(tmp_path):
    path = tmp_path / "instance.lock"
    lock = PidLock(path)
    lock.acquire()
    with pytest.raises(LockError):
        PidLock(path).acquire()
"""Fingerprints of directory trees, taken locally or over SSH."""

from __future__ import annotations

import hashlib
import os
import subprocess

from .logger import get_logger
from .ssh_client import SSHClient, SSHError

log = get_logger()


def listing_command(path: str) -> str:
    """Shell command printing a recursive long listing of a directory."""
    return f"ls -lR --time-style=full-iso '{path}' 2>/dev/null"


def tree_command(path: str, remote: bool) -> str:
    """Shell command printing every file's name and size, sorted."""
    if remote:
        return f"cd '{path}' && find . -type f -exec stat -c '%n %s' {{}} \\; | sort"
    return f"cd '{path}' && find . -type f -exec stat -f '%N %z' {{}} \\; | sort"


def _run_local(command: str) -> bytes:
    return subprocess.run(
        ["bash", "-c", command], check=True, stdout=subprocess.PIPE
    ).stdout


def listing_hash(path: str) -> bytes:
    """MD5 of the local recursive listing of a directory."""
    return hashlib.md5(_run_local(listing_command(path))).digest()


def calculate_hash(path: str, remote: bool, ssh_client: SSHClient | None = None) -> bytes:
    """MD5 of the sorted file list of a directory, local or on the remote host."""
    command = tree_command(path, remote)
    if remote:
        if ssh_client is None:
            raise SSHError("SSH未连接")
        out = ssh_client.output(command)
    else:
        out = _run_local(command)
    log.debug("Hash计算命令: %s", command)
    log.debug("Hash计算输出长度: %d", len(out))
    if len(out) < 200:
        log.debug("Hash计算输出: %s", out.decode("utf-8", errors="replace"))
    digest = hashlib.md5(out).digest()
    log.debug("计算出的hash: %s", digest.hex())
    return digest


def read_hash_file(path: str | os.PathLike) -> bytes | None:
    """The digest stored in a hash file, or None if absent or malformed."""
    try:
        with open(path, encoding="ascii", errors="replace") as handle:
            text = handle.read()
    except OSError:
        return None
    if len(text) != 32:
        return None
    try:
        return bytes.fromhex(text)
    except ValueError:
        return None


def write_hash_file(path: str | os.PathLike, digest: bytes) -> None:
    """Store a digest as lower-case hex."""
    with open(path, "w", encoding="ascii") as handle:
        handle.write(digest.hex())
    os.chmod(path, 0o644)
"""A thin SSH client for running commands on the remote host."""

from __future__ import annotations

import re
import socket
from pathlib import Path

import paramiko

from .config import Config
from .logger import get_logger

_KEY_TYPES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)
_INT_RE = re.compile(r"[+-]?\d+")

log = get_logger()


class SSHError(Exception):
    """Raised when the remote host cannot be reached or a command fails."""


def expand_key_path(path: str) -> str:
    """Expand a leading "~" to the user's home directory."""
    if not path.startswith("~"):
        return path
    try:
        home = Path.home()
    except RuntimeError as exc:
        raise SSHError(f"获取用户主目录失败: {exc}") from exc
    rest = path[1:].lstrip("/\\")
    return str(home / rest) if rest else str(home)


def parse_remote_stats(output: str) -> tuple[int, str]:
    """Parse "<file count>\\n<size>" as printed by find|wc and du."""
    lines = output.split("\n")
    if len(lines) < 2:
        return 0, ""
    count_text = lines[0].strip()
    if not _INT_RE.fullmatch(count_text):
        raise SSHError(f"文件数量转换失败: {count_text!r}")
    return int(count_text), lines[1].strip()


def _load_key(path: str) -> paramiko.PKey:
    try:
        with open(path, "rb"):
            pass
    except OSError as exc:
        raise SSHError(f"读取SSH私钥失败: {exc}") from exc
    last: Exception | None = None
    for key_type in _KEY_TYPES:
        try:
            return key_type.from_private_key_file(path)
        except (paramiko.SSHException, ValueError) as exc:
            last = exc
    raise SSHError(f"解析SSH私钥失败: {last}")


class SSHClient:
    """Connection to the configured remote host."""

    def __init__(self, config: Config):
        self.config = config
        self._client: paramiko.SSHClient | None = None

    @property
    def _timeout(self) -> float | None:
        return self.config.connect_timeout or None

    def _port(self) -> int:
        port = self.config.ssh_port
        try:
            return int(port)
        except ValueError:
            try:
                return socket.getservbyname(port, "tcp")
            except OSError as exc:
                raise SSHError(f"无效的SSH端口: {port!r}") from exc

    def _address(self) -> str:
        host = self.config.remote_host
        if ":" in host:
            host = f"[{host}]"
        return f"{host}:{self.config.ssh_port}"

    def connect(self) -> None:
        """Open the SSH connection, authenticating with the configured key."""
        key_path = expand_key_path(self.config.ssh_key)
        pkey = None
        if key_path and Path(key_path).exists():
            pkey = _load_key(key_path)

        port = self._port()
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                self.config.remote_host,
                port=port,
                username=self.config.remote_user,
                pkey=pkey,
                timeout=self._timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise SSHError(f"SSH连接失败: {exc}") from exc

        self._client = client
        log.info(
            "SSH连接成功: %s@%s:%s",
            self.config.remote_user,
            self.config.remote_host,
            self.config.ssh_port,
        )

    def close(self) -> None:
        """Close the connection if one is open."""
        if self._client is not None:
            client, self._client = self._client, None
            client.close()

    def is_connected(self) -> bool:
        """Whether a live connection is held."""
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def _exec(self, command: str) -> tuple[int, bytes]:
        if self._client is None:
            raise SSHError("SSH未连接")
        try:
            _, stdout, stderr = self._client.exec_command(command)
            data = stdout.read()
            stderr.read()
            status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as exc:
            raise SSHError(f"执行远程命令失败: {exc}") from exc
        return status, data

    def run(self, command: str) -> None:
        """Run a command; raise SSHError if it exits non-zero."""
        status, _ = self._exec(command)
        if status != 0:
            raise SSHError(f"远程命令退出码 {status}: {command}")

    def output(self, command: str) -> bytes:
        """Run a command and return its stdout; raise SSHError on failure."""
        status, data = self._exec(command)
        if status != 0:
            raise SSHError(f"远程命令退出码 {status}: {command}")
        return data

    def test_connection(self) -> str:
        """Connect and run a trivial command, returning its output."""
        self.connect()
        try:
            data = self.output("echo 'SSH连接测试成功'")
        except SSHError as exc:
            raise SSHError(f"执行测试命令失败: {exc}") from exc
        text = data.decode("utf-8", errors="replace")
        log.info("SSH测试输出: %s", text)
        return text

    def check_remote_path(self) -> None:
        """Raise SSHError unless the remote path is a directory."""
        if self._client is None:
            self.connect()
        try:
            self.run(f"[ -d '{self.config.remote_path}' ]")
        except SSHError as exc:
            raise SSHError(f"远程路径不存在: {self.config.remote_path}") from exc
        log.info("远程路径存在: %s", self.config.remote_path)

    def get_remote_stats(self) -> tuple[int, str]:
        """Return the remote file count and human-readable directory size."""
        if self._client is None:
            self.connect()
        path = self.config.remote_path
        command = f"find '{path}' -type f | wc -l; du -sh '{path}' 2>/dev/null | cut -f1"
        try:
            data = self.output(command)
        except SSHError as exc:
            raise SSHError(f"获取远程统计信息失败: {exc}") from exc
        return parse_remote_stats(data.decode("utf-8", errors="replace"))

    def check_network(self) -> str:
        """Check the SSH port is reachable over TCP; return the address."""
        address = self._address()
        try:
            port = self._port()
            with socket.create_connection(
                (self.config.remote_host, port), timeout=self._timeout
            ):
                pass
        except (OSError, SSHError) as exc:
            raise SSHError(f"网络连接失败: {exc}") from exc
        log.info("网络连接正常")
        return address
import socket
from unittest import mock

import pytest

from sshpull.config import Config
from sshpull.ssh_client import (
    SSHClient,
    SSHError,
    expand_key_path,
    parse_remote_stats,
)


def make_config(**overrides):
    values = dict(
        remote_user="deploy",
        remote_host="127.0.0.1",
        remote_path="/srv/data",
        local_path="/tmp/mirror",
        ssh_port="22",
        connect_timeout=2,
    )
    values.update(overrides)
    return Config(**values)


def free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class _Channel:
    def __init__(self, status):
        self._status = status

    def recv_exit_status(self):
        return self._status


class _Stream:
    def __init__(self, data, status):
        self._data = data
        self.channel = _Channel(status)

    def read(self):
        return self._data


def fake_paramiko_client(responses, seen):
    class FakeClient:
        def set_missing_host_key_policy(self, policy):
            pass

        def connect(self, hostname, **kwargs):
            seen.append(("connect", hostname, kwargs["port"]))

        def exec_command(self, command):
            seen.append(command)
            status, data = responses.get(command, (0, b""))
            return None, _Stream(data, status), _Stream(b"", status)

        def get_transport(self):
            return None

        def close(self):
            seen.append("close")

    return FakeClient


def test_expand_key_path_home(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    assert expand_key_path("~/.ssh/id_rsa") == str(tmp_path / ".ssh" / "id_rsa")
    assert expand_key_path("~") == str(tmp_path)


def test_expand_key_path_plain():
    assert expand_key_path("/etc/key") == "/etc/key"
    assert expand_key_path("") == ""


def test_parse_remote_stats():
    assert parse_remote_stats("42\n1.5M\n") == (42, "1.5M")
    assert parse_remote_stats("  7 \n 12K \n") == (7, "12K")


def test_parse_remote_stats_short_output():
    assert parse_remote_stats("42") == (0, "")


def test_parse_remote_stats_bad_count():
    with pytest.raises(SSHError, match="文件数量转换失败"):
        parse_remote_stats("many\n1M\n")


def test_run_without_connection():
    client = SSHClient(make_config())
    assert client.is_connected() is False
    with pytest.raises(SSHError, match="SSH未连接"):
        client.run("true")


def test_check_network_reaches_listener():
    with socket.socket() as server:
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        port = server.getsockname()[1]
        client = SSHClient(make_config(ssh_port=str(port)))
        assert client.check_network() == f"127.0.0.1:{port}"


def test_check_network_closed_port():
    client = SSHClient(make_config(ssh_port=str(free_port())))
    with pytest.raises(SSHError, match="网络连接失败"):
        client.check_network()


def test_connect_refused():
    client = SSHClient(make_config(ssh_port=str(free_port())))
    with pytest.raises(SSHError, match="SSH连接失败"):
        client.connect()
    assert client.is_connected() is False


def test_connect_bad_key(tmp_path):
    key = tmp_path / "id_bad"
    key.write_text("not a key\n")
    client = SSHClient(make_config(ssh_key=str(key)))
    with pytest.raises(SSHError, match="解析SSH私钥失败"):
        client.connect()


def test_test_connection_returns_output():
    seen = []
    responses = {"echo 'SSH连接测试成功'": (0, "SSH连接测试成功\n".encode())}
    with mock.patch("paramiko.SSHClient", fake_paramiko_client(responses, seen)):
        client = SSHClient(make_config())
        assert client.test_connection() == "SSH连接测试成功\n"
    assert seen[0] == ("connect", "127.0.0.1", 22)


def test_check_remote_path_missing():
    seen = []
    responses = {"[ -d '/srv/data' ]": (1, b"")}
    with mock.patch("paramiko.SSHClient", fake_paramiko_client(responses, seen)):
        client = SSHClient(make_config())
        with pytest.raises(SSHError, match="/srv/data"):
            client.check_remote_path()
    assert "[ -d '/srv/data' ]" in seen


def test_get_remote_stats_and_close():
    seen = []
    command = "find '/srv/data' -type f | wc -l; du -sh '/srv/data' 2>/dev/null | cut -f1"
    responses = {command: (0, b"42\n1.5M\n")}
    with mock.patch("paramiko.SSHClient", fake_paramiko_client(responses, seen)):
        client = SSHClient(make_config())
        assert client.get_remote_stats() == (42, "1.5M")
        client.close()
    assert seen[-1] == "close"
    with pytest.raises(SSHError):
        client.output("true")
import pytest

from sshpull.config import Config, ConfigError, load, save

BASIC = """\
remoteUser: deploy
remoteHost: 192.0.2.10
remotePath: /srv/data
localPath: ./data
sshPort: 2222
connectTimeout: 10
enableDelete: true
"""


def write(tmp_path, text, name="config.yaml"):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_load_reads_values(tmp_path):
    cfg = load(write(tmp_path, BASIC))
    assert cfg.remote_user == "deploy"
    assert cfg.remote_host == "192.0.2.10"
    assert cfg.remote_path == "/srv/data"
    assert cfg.local_path == "./data"
    assert cfg.connect_timeout == 10
    assert cfg.enable_delete is True
    assert cfg.show_progress is False


def test_numeric_port_becomes_string(tmp_path):
    cfg = load(write(tmp_path, BASIC))
    assert cfg.ssh_port == "2222"


def test_defaults_are_filled_in(tmp_path):
    cfg = load(write(tmp_path, BASIC))
    assert cfg.remote_watch_interval == 5
    assert cfg.hash_file == ".last_sync_hash"
    assert cfg.instance_lock_file == "./lock/instance.lock"
    assert cfg.sync_lock_file == "./lock/sync.lock"


def test_explicit_values_override_defaults(tmp_path):
    text = BASIC + "remoteWatchInterval: 30\nhashFile: h.txt\nsyncLockFile: s.lock\n"
    cfg = load(write(tmp_path, text))
    assert cfg.remote_watch_interval == 30
    assert cfg.hash_file == "h.txt"
    assert cfg.sync_lock_file == "s.lock"


def test_missing_required_field(tmp_path):
    text = "remoteUser: deploy\nremoteHost: h\nremotePath: /x\n"
    with pytest.raises(ConfigError, match="localPath"):
        load(write(tmp_path, text))


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load(tmp_path / "absent.yaml")


def test_empty_file_rejected(tmp_path):
    with pytest.raises(ConfigError):
        load(write(tmp_path, ""))


def test_wrong_type_rejected(tmp_path):
    with pytest.raises(ConfigError, match="connectTimeout"):
        load(write(tmp_path, BASIC.replace("connectTimeout: 10", "connectTimeout: soon")))


def test_validate_direct():
    with pytest.raises(ConfigError):
        Config(remote_user="u", remote_host="h", remote_path="").validate()


def test_save_then_load_round_trip(tmp_path):
    original = Config(
        remote_user="deploy",
        remote_host="example.com",
        remote_path="/srv/data",
        local_path="/tmp/mirror",
        log_file="logs/sync.log",
        instance_lock_file="i.lock",
        sync_lock_file="s.lock",
        backup_dir="backup",
        ssh_port="22",
        ssh_key="~/.ssh/id_ed25519",
        show_progress=True,
        bandwidth_limit="500",
        enable_delete=False,
        connect_timeout=15,
        backup_retention=7,
        remote_watch_interval=12,
    )
    target = tmp_path / "nested" / "dir" / "config.yaml"
    save(original, target)
    loaded = load(target)
    assert loaded.remote_user == original.remote_user
    assert loaded.remote_host == original.remote_host
    assert loaded.local_path == original.local_path
    assert loaded.ssh_key == original.ssh_key
    assert loaded.show_progress is True
    assert loaded.enable_delete is False
    assert loaded.connect_timeout == original.connect_timeout
    assert loaded.backup_retention == original.backup_retention
    assert loaded.remote_watch_interval == original.remote_watch_interval
    assert loaded.bandwidth_limit == original.bandwidth_limit


def test_save_writes_header(tmp_path):
    target = tmp_path / "c.yaml"
    save(Config(remote_user="u"), target)
    text = target.read_text(encoding="utf-8")
    assert text.startswith("# SSH 同步工具配置文件\n")
    assert 'remoteUser: "u"' in text
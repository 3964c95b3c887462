"""Loading, validating and saving the sync tool's YAML configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from typing import Any

import yaml

DEFAULT_REMOTE_WATCH_INTERVAL = 5
DEFAULT_HASH_FILE = ".last_sync_hash"
DEFAULT_INSTANCE_LOCK_FILE = "./lock/instance.lock"
DEFAULT_SYNC_LOCK_FILE = "./lock/sync.lock"


class ConfigError(ValueError):
    """Raised when a configuration file is malformed or incomplete."""


@dataclass
class Config:
    """Settings for one remote-to-local mirror."""

    remote_user: str = field(default="", metadata={"key": "remoteUser"})
    remote_host: str = field(default="", metadata={"key": "remoteHost"})
    remote_path: str = field(default="", metadata={"key": "remotePath"})
    local_path: str = field(default="", metadata={"key": "localPath"})
    log_file: str = field(default="", metadata={"key": "logFile"})
    instance_lock_file: str = field(default="", metadata={"key": "instanceLockFile"})
    sync_lock_file: str = field(default="", metadata={"key": "syncLockFile"})
    backup_dir: str = field(default="", metadata={"key": "backupDir"})
    ssh_port: str = field(default="", metadata={"key": "sshPort"})
    ssh_key: str = field(default="", metadata={"key": "sshKey"})
    show_progress: bool = field(default=False, metadata={"key": "showProgress"})
    bandwidth_limit: str = field(default="", metadata={"key": "bandwidthLimit"})
    enable_delete: bool = field(default=False, metadata={"key": "enableDelete"})
    connect_timeout: int = field(default=0, metadata={"key": "connectTimeout"})
    backup_retention: int = field(default=0, metadata={"key": "backupRetention"})
    remote_watch_interval: int = field(default=0, metadata={"key": "remoteWatchInterval"})
    hash_file: str = field(default="", metadata={"key": "hashFile"})
    log_level: str = field(default="", metadata={"key": "logLevel"})

    def validate(self) -> None:
        """Raise ConfigError unless the required fields are set."""
        if not (self.remote_user and self.remote_host and self.remote_path and self.local_path):
            raise ConfigError("配置项缺失: remoteUser/remoteHost/remotePath/localPath 必填")


_YAML_BOOL = {True: "true", False: "false"}


def _coerce(key: str, kind: type, value: Any) -> Any:
    if kind is bool:
        if isinstance(value, bool):
            return value
        raise ConfigError(f"{key}: expected a boolean, got {value!r}")
    if kind is int:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        raise ConfigError(f"{key}: expected an integer, got {value!r}")
    if isinstance(value, (dict, list)):
        raise ConfigError(f"{key}: expected a string, got {value!r}")
    if isinstance(value, bool):
        return _YAML_BOOL[value]
    return str(value)


def _from_mapping(data: dict) -> Config:
    cfg = Config()
    for f in fields(Config):
        key = f.metadata["key"]
        value = data.get(key)
        if value is None:
            continue
        kind = f.type if isinstance(f.type, type) else {"str": str, "bool": bool, "int": int}[f.type]
        setattr(cfg, f.name, _coerce(key, kind, value))
    return cfg


def load(config_path: str | os.PathLike) -> Config:
    """Read a configuration file, fill in defaults and validate it."""
    with open(config_path, encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML: {exc}") from exc
    if data is None:
        raise ConfigError("configuration file is empty")
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a mapping")

    cfg = _from_mapping(data)
    if cfg.remote_watch_interval == 0:
        cfg.remote_watch_interval = DEFAULT_REMOTE_WATCH_INTERVAL
    if not cfg.hash_file:
        cfg.hash_file = DEFAULT_HASH_FILE
    if not cfg.instance_lock_file:
        cfg.instance_lock_file = DEFAULT_INSTANCE_LOCK_FILE
    if not cfg.sync_lock_file:
        cfg.sync_lock_file = DEFAULT_SYNC_LOCK_FILE
    cfg.validate()
    return cfg


def save(config: Config, config_path: str | os.PathLike) -> None:
    """Write the configuration as a commented YAML file."""
    directory = os.path.dirname(os.fspath(config_path)) or "."
    os.makedirs(directory, exist_ok=True)

    content = (
        "# SSH 同步工具配置文件\n"
        f'remoteUser: "{config.remote_user}"      # 远程用户名\n'
        f'remoteHost: "{config.remote_host}"      # 远程主机IP或域名\n'
        f'remotePath: "{config.remote_path}"      # 远程数据路径\n'
        f'localPath: "{config.local_path}"        # 本地数据路径\n'
        f'logFile: "{config.log_file}"            # 日志文件路径\n'
        f'instanceLockFile: "{config.instance_lock_file}"  # 服务实例锁\n'
        f'syncLockFile: "{config.sync_lock_file}"          # 同步任务锁\n'
        f'backupDir: "{config.backup_dir}"        # 备份目录\n'
        f'sshPort: "{config.ssh_port}"            # SSH端口\n'
        f'sshKey: "{config.ssh_key}"              # SSH私钥路径\n'
        f"showProgress: {_YAML_BOOL[bool(config.show_progress)]}                    # 是否显示详细进度\n"
        f'bandwidthLimit: "{config.bandwidth_limit}"        # 带宽限制（KB/s）\n'
        f"enableDelete: {_YAML_BOOL[bool(config.enable_delete)]}                    # 启用删除本地多余文件\n"
        f"connectTimeout: {config.connect_timeout}                   # 连接超时时间（秒）\n"
        f"backupRetention: {config.backup_retention}                  # 备份保留天数\n"
        f"remoteWatchInterval: {config.remote_watch_interval}           # 远程轮询间隔（秒）\n"
    )
    with open(config_path, "w", encoding="utf-8") as handle:
        handle.write(content)
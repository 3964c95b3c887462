"""Command-line entry point: argument parsing and the top-level commands."""

from __future__ import annotations

import os
import signal
import subprocess
import sys
import threading
from collections.abc import Sequence

from .config import Config, ConfigError, load
from .hashing import calculate_hash
from .locks import LockError
from .logger import get_logger, init_logger
from .ssh_client import SSHClient, SSHError
from .syncer import Syncer, SyncError
from .watch import RemoteHashWatcher, watch_local, watch_remote

DEFAULT_ACTION = "sync"
DEFAULT_CONFIG = "config.yaml"
VERSION_FILE = "version.py"
UNKNOWN_VERSION = "unknown"
VERSION_BANNER = "SSH同步工具 v1.0.0"

COMMAND_ALIASES = {
    "sync": "sync",
    "s": "sync",
    "test": "test",
    "t": "test",
    "conf": "show-config",
    "config": "show-config",
    "show-config": "show-config",
    "ver": "version",
    "v": "version",
    "version": "version",
    "w": "watch",
    "watch": "watch",
    "wr": "watch-remote",
    "watch-remote": "watch-remote",
    "wrh": "watch-remote-hash",
    "watch-remote-hash": "watch-remote-hash",
    "help": "help",
    "h": "help",
}

_LOCKED_ACTIONS = frozenset(
    {"sync", "watch", "watch-remote", "quiet-sync", "verbose-sync", "watch-remote-hash"}
)
_VERSION_PREFIXES = ("var Version", "__version__")
_FAILURES = (
    SSHError,
    SyncError,
    LockError,
    ConfigError,
    subprocess.CalledProcessError,
    OSError,
)

_HELP = """SSH远程到本地单向同步工具

版本: {version}

用法: ssh-sync-tool [命令] [参数]

常用命令:
  sync, s                执行同步 (默认)
  test, t                测试SSH连接
  conf, config           显示当前配置
  ver, version           显示版本信息
  w, watch               本地目录监听自动同步
  wr, watch-remote       远程目录轮询自动同步
  wrh, watch-remote-hash 远程hash监听自动同步
  help, h                显示帮助信息

参数:
  -c, --config <文件>    指定配置文件 (默认: config.yaml)
  --config=xxx.yaml      同上
  -q, --quiet            静默模式
  -v, --verbose          详细模式

示例:
  ssh-sync-tool sync -c my.yaml
  ssh-sync-tool test
  ssh-sync-tool wrh --config=prod.yaml
  ssh-sync-tool -q
  ssh-sync-tool w"""

log = get_logger()


def parse_args(args: Sequence[str]) -> tuple[str, str]:
    """Return (action, config path) from the command-line arguments."""
    action = DEFAULT_ACTION
    config_path = DEFAULT_CONFIG
    args = list(args)
    for arg, following in zip(args, [*args[1:], None]):
        if arg.startswith("--config="):
            config_path = arg[len("--config="):]
            continue
        if arg.startswith("-c="):
            config_path = arg[len("-c="):]
            continue
        if arg in ("-c", "--config"):
            if following is not None:
                config_path = following
            continue
        alias = COMMAND_ALIASES.get(arg.lstrip("-"))
        if alias is not None:
            action = alias
            continue
        if arg in ("-q", "--quiet"):
            action = "quiet-sync"
        elif arg in ("-v", "--verbose"):
            action = "verbose-sync"
    return action, config_path


def read_version(path: str | os.PathLike = VERSION_FILE) -> str:
    """Read a version assignment from a file, or "unknown"."""
    try:
        with open(path, encoding="utf-8") as handle:
            lines = handle.read().split("\n")
    except OSError:
        return UNKNOWN_VERSION
    for line in lines:
        line = line.strip()
        if line.startswith(_VERSION_PREFIXES):
            parts = line.split("=")
            if len(parts) == 2:
                return parts[1].strip(" \"'")
    return UNKNOWN_VERSION


class App:
    """The tool's top-level commands, bound to one configuration."""

    def __init__(self, config: Config | None = None):
        self.config = config

    @classmethod
    def from_path(cls, config_path: str | os.PathLike) -> App:
        """Load the configuration and set up logging."""
        try:
            config = load(config_path)
        except (OSError, ConfigError) as exc:
            raise ConfigError(f"加载配置文件失败: {exc}") from exc
        try:
            init_logger(config.log_file, config.log_level)
        except OSError as exc:
            raise ConfigError(f"初始化日志失败: {exc}") from exc
        return cls(config)

    def show_help(self) -> str:
        """Print the usage text, with the version read from the version file; return it."""
        text = _HELP.format(version=read_version())
        sys.stdout.write(text + "\n")
        return text

    def show_config(self) -> None:
        cfg = self.config
        print("当前配置:")
        print(f"  远程用户: {cfg.remote_user}")
        print(f"  远程主机: {cfg.remote_host}")
        print(f"  SSH端口: {cfg.ssh_port}")
        print(f"  远程路径: {cfg.remote_path}")
        print(f"  本地路径: {cfg.local_path}")
        print(f"  日志文件: {cfg.log_file}")
        print(f"  备份目录: {cfg.backup_dir}")
        print(f"  SSH密钥: {cfg.ssh_key}")
        print(f"  进度显示: {'true' if cfg.show_progress else 'false'}")
        print(f"  带宽限制: {cfg.bandwidth_limit} KB/s")
        print(f"  启用删除: {'true' if cfg.enable_delete else 'false'}")
        print(f"  连接超时: {cfg.connect_timeout} 秒")
        print(f"  备份保留: {cfg.backup_retention} 天")

    def show_version(self) -> str:
        """Print the version banner and return it."""
        sys.stdout.write(VERSION_BANNER + "\n")
        return VERSION_BANNER

    def test_connection(self) -> None:
        """Check the network, the SSH login and the remote path."""
        log.info("=== 开始连接测试 ===")
        client = SSHClient(self.config)
        try:
            client.check_network()
            try:
                client.test_connection()
            except SSHError:
                log.error("请检查SSH配置：")
                log.error("1. 确保SSH密钥正确配置")
                log.error("2. 检查远程主机防火墙设置")
                log.error("3. 验证用户名和主机地址")
                raise
            try:
                client.check_remote_path()
            except SSHError:
                log.error("请检查远程路径配置")
                raise
        finally:
            client.close()
        log.info("=== 连接测试完成 ===")

    def sync(self) -> None:
        """Run one full pull."""
        log.info("=== SSH远程到本地同步开始 ===")
        syncer = Syncer(self.config)
        try:
            syncer.sync()
        except _FAILURES:
            log.error("=== 同步失败 ===")
            raise
        syncer.remove_lock("sync")
        log.info("=== 同步成功完成 ===")

    def watch_and_sync(self, stop: threading.Event | None = None) -> None:
        """Push the local directory whenever its listing changes."""
        watch_local(self.config, Syncer(self.config), stop or threading.Event())

    def watch_remote_and_sync(self, stop: threading.Event | None = None) -> None:
        """Pull whenever the remote listing differs from the last known hash."""
        watch_remote(
            self.config,
            Syncer(self.config),
            SSHClient(self.config),
            stop or threading.Event(),
        )

    def watch_remote_hash_and_sync(self, stop: threading.Event | None = None) -> None:
        """Watch the remote tree's hash and pull on every change until stopped."""
        stop = stop or threading.Event()
        log.info("=== 启动远程hash监听与抢占式自动同步 ===")
        cfg = self.config
        syncer = Syncer(cfg)

        if not os.path.exists(cfg.local_path):
            try:
                os.makedirs(cfg.local_path, mode=0o755, exist_ok=True)
            except OSError as exc:
                log.error("自动创建本地目录失败: %s", exc)
                raise

        log.info("建立SSH连接...")
        client = SSHClient(cfg)
        try:
            client.connect()
        except SSHError as exc:
            log.error("SSH连接失败: %s", exc)
            raise
        try:
            log.info("SSH连接建立成功，将复用此连接")
            try:
                local_hash = calculate_hash(cfg.local_path, False)
            except (subprocess.CalledProcessError, OSError) as exc:
                log.error("初始化本地hash失败: %s", exc)
                raise
            log.info("本地目录初始hash: %s", local_hash.hex())

            watcher = RemoteHashWatcher(cfg, client, syncer, cfg.hash_file)
            watcher.last_local_hash = local_hash

            log.info("启动首次hash对比协程")
            threading.Thread(target=watcher.initial_compare, daemon=True).start()
            log.info("启动远程hash监听协程，间隔: %ss", cfg.remote_watch_interval)
            runner = threading.Thread(target=watcher.run, args=(stop,), daemon=True)
            runner.start()

            stop.wait()
            log.info("远程监听主循环退出")
            watcher.cancel_sync()
            runner.join(timeout=1)
        finally:
            client.close()

    def set_quiet_mode(self) -> None:
        self.config.show_progress = False

    def set_verbose_mode(self) -> None:
        self.config.show_progress = True


def _install_signal_handlers(syncer: Syncer, stop: threading.Event) -> dict:
    """Clean up the locks and exit on SIGINT/SIGTERM; return the previous handlers."""

    def handle(signum, _frame) -> None:
        print(f"\n收到信号 {signal.Signals(signum).name}，正在清理实例锁和同步锁并退出...")
        stop.set()
        syncer.remove_lock("instance")
        syncer.remove_lock("sync")
        raise SystemExit(0)

    previous = {}
    if threading.current_thread() is not threading.main_thread():
        return previous
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handle)
    return previous


def _run_action(app: App, action: str, stop: threading.Event) -> int:
    commands = {
        "show-config": (app.show_config, None),
        "test": (app.test_connection, "连接测试失败"),
        "quiet-sync": (lambda: (app.set_quiet_mode(), app.sync()), "同步失败"),
        "verbose-sync": (lambda: (app.set_verbose_mode(), app.sync()), "同步失败"),
        "watch": (lambda: app.watch_and_sync(stop), "监听与同步失败"),
        "watch-remote": (lambda: app.watch_remote_and_sync(stop), "远程监听与同步失败"),
        "watch-remote-hash": (
            lambda: app.watch_remote_hash_and_sync(stop),
            "远程hash监听同步失败",
        ),
    }
    command, failure = commands.get(action, (app.sync, "同步失败"))
    try:
        command()
    except _FAILURES as exc:
        log.error("%s: %s", failure, exc)
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Run the tool; return the process exit status."""
    args = sys.argv[1:] if argv is None else list(argv)
    action, config_path = parse_args(args)

    if action == "help":
        App().show_help()
        return 0
    if action == "version":
        App().show_version()
        return 0

    try:
        app = App.from_path(config_path)
    except ConfigError as exc:
        print(f"初始化应用失败: {exc}")
        return 1

    stop = threading.Event()
    if action not in _LOCKED_ACTIONS:
        return _run_action(app, action, stop)

    syncer = Syncer(app.config)
    try:
        syncer.create_lock("instance")
    except LockError as exc:
        print(exc)
        return 1
    previous = _install_signal_handlers(syncer, stop)
    try:
        return _run_action(app, action, stop)
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
        syncer.remove_lock("instance")


if __name__ == "__main__":
    sys.exit(main())
# sshpull

Keeps a local directory as a mirror of a directory on a remote host. Transfers
are done by `rsync` with `ssh` as its transport. Files that rsync overwrites
locally are kept in a backup directory named after the day
(`<backupDir>/YYYYMMDD`). After each full sync, backup directories older than
`backupRetention` days are removed.

Besides the one-shot sync there are three watch modes. All of them poll at a
fixed interval; none of them listens for filesystem events.

* **watch**: hashes a recursive listing of the local directory
  (`ls -lR --time-style=full-iso`). When the listing changes it **pushes** the
  local directory to the remote path with rsync. A push still running when a
  newer change arrives is cancelled first. Each push has a 60 second limit and
  is stopped if the local path or the remote path disappears.
* **watch-remote**: over one SSH connection, hashes the same kind of listing of
  the remote directory. Whenever that hash differs from the last stored hash it
  runs a full sync, then stores the hash of the local listing. It reconnects if
  the connection drops.
* **watch-remote-hash**: hashes the sorted list of file names and sizes on the
  remote side. When that hash changes it pulls the remote directory, cancelling
  any pull still running. After each pull it compares the local and remote
  hashes and logs whether they agree.

Two PID lock files keep runs from overlapping. The instance lock is taken by
every command that syncs or watches. The sync lock guards each single sync. A
lock whose process no longer exists is cleared automatically.

## Requirements

* Python 3.10 or newer.
* `rsync` and `ssh` on the local machine. `/usr/local/bin/rsync` is used if it
  exists, otherwise `rsync` from `PATH`.
* `bash` and `du` locally. `watch` and `watch-remote` need GNU `ls` (for
  `--time-style`) wherever they list a directory.
* `watch-remote-hash` builds the remote hash with GNU `stat -c` and the local hash
  with BSD `stat -f`.
* Key-based SSH access to the remote host. Only the key in `sshKey` is offered:
  no agent and no default key files. Unknown host keys are accepted without
  checking.

## Installation

```
pip install .
```

## Configuration

Settings are read from a YAML file, `config.yaml` in the current directory by
default:

```yaml
remoteUser: "deploy"
remoteHost: "backup.example.com"
remotePath: "/srv/data"
localPath: "./data"
logFile: "./logs/sync.log"
backupDir: "./backup"
sshPort: "22"
sshKey: "~/.ssh/id_ed25519"
showProgress: true
bandwidthLimit: "5000"        # KB/s, passed to rsync --bwlimit; empty for no limit
enableDelete: false           # pass --delete to rsync
connectTimeout: 10            # seconds
backupRetention: 7            # days
remoteWatchInterval: 5        # seconds; 0 or missing means 5
hashFile: ".last_sync_hash"   # default
instanceLockFile: "./lock/instance.lock"   # default
syncLockFile: "./lock/sync.lock"           # default
logLevel: "all"
```

* **Required settings.** `remoteUser`, `remoteHost`, `remotePath` and `localPath`
  must be set, otherwise loading raises `sshpull.config.ConfigError`.
* **Log levels.** `logLevel` accepts `all`, `dev`, `debug`, `info`, `notice`,
  `warning`, `warn`, `prod`, `error` and `critical`. An empty or unknown level
  means `all`.
* **Log output.** Messages go to stdout and also to `logFile` when one is set.
* **Writing a config.** `sshpull.config.save(config, path)` writes a commented
  YAML file holding the main settings.

## Usage

```
sshpull [command] [options]
```

| Command                         | Action                                        |
|---------------------------------|-----------------------------------------------|
| `sync`, `s`                     | run one full sync (the default)               |
| `test`, `t`                     | check the network, SSH login and remote path  |
| `conf`, `config`, `show-config` | print the current configuration               |
| `ver`, `v`, `version`           | print the version banner                      |
| `w`, `watch`                    | watch the local listing and push on change    |
| `wr`, `watch-remote`            | poll the remote listing and sync on change    |
| `wrh`, `watch-remote-hash`      | hash-watch the remote tree and pull on change |
| `help`, `h`                     | show help                                     |

Leading dashes are ignored when matching a command, so `--help` works as well.
Note that `-v` is matched as the `version` command.

Options:

* `-c FILE`, `--config FILE`, `--config=FILE`, `-c=FILE`: the configuration file.
* `-q`, `--quiet`: run a sync with `showProgress` set to false.

The help text takes its version from a `version.py` file in the current
directory. If that file is missing, the version is shown as `unknown`.

The exit status is 0 on success and 1 on failure. A failure is a configuration
that cannot be loaded, a lock held by a running process, or a failed sync or
connection test.

The watch modes run until they are interrupted. On SIGINT or SIGTERM the
instance and sync lock files are removed and the process exits.

Examples:

```
sshpull sync -c my.yaml
sshpull test
sshpull wrh --config=prod.yaml
sshpull -q
sshpull w
```

## Using it from Python

```python
from sshpull.config import load
from sshpull.syncer import Syncer

config = load("config.yaml")
Syncer(config).sync(None)
```

* **`sshpull.syncer.Syncer`** offers `sync`, `perform_sync`, `sync_paths` (push),
  `sync_pull`, `check_local_safety` and `cleanup_old_backups`. The methods that
  run rsync take an optional `threading.Event`; setting it stops the transfer.
* **`sshpull.ssh_client.SSHClient`** runs commands on the remote host.
* **`sshpull.hashing`** computes the directory fingerprints.
* **`sshpull.locks.PidLock`** is the lock file, usable as a context manager.
* **`sshpull.cli.App`** exposes the same operations as the command line.
* **`sshpull.watch`** provides `watch_local`, `watch_remote` and
  `RemoteHashWatcher`. `RemoteHashWatcher` can be driven step by step with
  `initial_compare()` and `poll_once()`.

## Limitations

* Changes are detected by polling only; there is no filesystem-event watching.
* Nothing merges or resolves conflicts between the two sides.
* `-q` and `-v` only change the `showProgress` setting; the rsync options are the
  same either way.
* Host keys are not verified.
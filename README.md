# packrat

A snapshot-based backup engine for shell history, dotfiles, editor and tool
configuration, and any other paths you care about. Files are hashed with
SHA-256 and stored content-addressably under `blobs/<first 2>/<rest>`; each
backup run of a group produces a JSON snapshot manifest, and a local SQLite
database keeps track of snapshots and run history so only changed files are
uploaded.

Install with `pip install .` (add `.[test]` for pytest).

## Configuration (`packrat.config`)

Configuration lives in a TOML file with `[general]`, `[scheduler]`,
`[storage]`, `[encryption]`, `[versioning]` and `[notifications]` tables, plus
any number of `[[backup]]` groups and `[[hook]]` entries:

```toml
[general]
machine_name = "workstation"
machine_id = "abcd1234"
parallel_uploads = 3

[storage]
backend = "rclone"
rclone_remote = "myremote"
remote_base_path = "packrat-backups"

[versioning]
retention_count = 50
retention_days = 30

[[backup]]
name = "dotfiles"
paths = ["~/.bashrc", "~/.gitconfig"]
interval = "1h"
exclude = ["*.log"]
```

```python
from packrat.config import load, validate, save_config

config = load("~/.config/packrat/config.toml")   # ConfigNotFoundError / ConfigInvalidError
validate(config)                                 # raises ConfigInvalidError on problems
for group in config.backups:
    print(group.name, group.get_interval(config.scheduler.default_interval))
save_config("~/.config/packrat/config.toml", config)   # written with mode 0600
```

`load` expands `~` in backup paths, `log_file` and `key_file`, and sets
`parallel_uploads` to 3 when it is absent. `validate` checks required fields,
durations (parsed by `parse_duration`, e.g. `"1h30m"`), a minimum group
interval of 5 minutes, hook `when`/`fail_action`/`timeout` values and the
encryption key source; a path that appears in two groups only produces a
warning. `Config.to_dict()` and `Config.from_dict()` convert to and from the
TOML table layout.

## Defaults (`packrat.defaults`)

`default_config(log_file)` builds a starting configuration with a random
`machine_id`, a `user-host` machine name and groups for shell history (paths
chosen from `detect_shell()`), dotfiles, AI tool configs, editor configs and
GnuPG, plus a pre-backup hook that dumps package lists.
`default_backup_groups(shell)` returns just the groups. `migrate_config(config)`
brings a configuration up to date; the current format needs no steps, so it
is returned unchanged.

## Snapshots and diffs (`packrat.snapshot`, `packrat.differ`)

```python
from packrat.differ import walk_paths, diff_snapshots
from packrat.snapshot import blob_path, manifest_path

files = walk_paths(["/home/me/.config/nvim"], ["*.cache"], [])
for info in files:
    print(info.path, blob_path(info.sha256))

print(manifest_path("dotfiles", "snap-20240315-143022-a1b2"))
# manifests/dotfiles/snap-20240315-143022-a1b2.json
```

Exclude and include patterns are shell-style and are matched against both the
base name and the full path; an exclude ending in `/` (such as
`workspaceStorage/`) skips that directory wherever it appears.
`diff_snapshots(old, new)` reports each path as `added`, `modified` or
`deleted`; unchanged files are left out. `content_diff` gives a coloured
character diff and `unified_diff` a unified diff of two texts.
`marshal_snapshot` / `unmarshal_snapshot` encode manifests as JSON;
`generate_snapshot_id()` returns IDs like `snap-YYYYMMDD-HHMMSS-xxxx`.

## State database (`packrat.state`)

```python
from packrat.state import StateDB

with StateDB("state.db") as db:
    last = db.get_last_snapshot("dotfiles")
    for record in db.get_backup_history("dotfiles", 20):
        print(record.timestamp, record.status, record.files_changed, record.duration)
    print(db.get_last_backup_time("dotfiles"))   # None if never successful
```

## Running backups (`packrat.engine`)

```python
from packrat.engine import BackupOptions, Engine, StorageBackend
from packrat.progress import logging_progress
import logging

class DirectoryStorage(StorageBackend):
    def __init__(self, root): self.root = root
    def upload(self, path, data): ...
    def delete(self, path): ...

engine = Engine(config, DirectoryStorage("/backups"), db, "/tmp/packrat.lock")
engine.run(BackupOptions(on_progress=logging_progress(logging.getLogger("packrat"), 30)))
engine.run(BackupOptions(force=True), "dotfiles")   # only the named groups
print(engine.dry_run())
engine.garbage_collect()
```

`run` takes a lock file (stale locks from dead processes are removed; a live
one raises `LockError`), backs up groups two at a time, uploads changed blobs
in parallel (`parallel_uploads`), records each run in the state database and
raises `BackupError` listing any group failures. `run_group` backs up one
group and returns its `Snapshot`, or `None` when nothing changed (unless
`force` is set). `garbage_collect` deletes snapshots that are both beyond
`retention_count` and older than `retention_days`. `read_lock_status(path)`
tells whether a backup is running and which groups are still in progress.
`packrat.progress.format_bytes` formats sizes as `B`, `KB`, `MB` or `GB`.

## What this package does not do

- There is no command-line program or background scheduler; it is a library.
- No concrete remote storage is included: you supply a `StorageBackend`
  subclass with `upload` and `delete`.
- No encryption is built in: pass `encrypt=` (a function of data and
  recipient returning bytes) to `Engine`; encrypted blobs get a `.age` suffix.
- Hooks are not executed by themselves: pass `run_hooks=` (called with the
  hook list and `"pre-backup"` or `"post-backup"`) to `Engine`.
- There is no restore, and unreferenced blobs are not cleaned up by
  `garbage_collect`.
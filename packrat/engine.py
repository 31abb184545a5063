"""The backup engine: scanning groups, uploading blobs and manifests, locking and cleanup."""

import hashlib
import logging
import os
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from packrat.config import BackupGroup, Config, HookConfig
from packrat.differ import FileChange, FileInfo, diff_snapshots, walk_paths
from packrat.progress import ProgressFunc
from packrat.snapshot import (
    ZERO_TIME,
    FileEntry,
    Snapshot,
    SnapshotError,
    SnapshotStats,
    blob_path,
    generate_snapshot_id,
    manifest_path,
    marshal_snapshot,
)
from packrat.state import StateDB

logger = logging.getLogger(__name__)

Encryptor = Callable[[bytes, str], bytes]
HookRunner = Callable[[list[HookConfig], str], None]


class LockError(Exception):
    """Another backup holds the lock."""


class BackupError(Exception):
    """A backup operation failed."""


class StorageBackend(ABC):
    """Remote storage that blobs and manifests are written to."""

    @abstractmethod
    def upload(self, path: str, data: bytes) -> None:
        """Store data at the given remote path."""

    @abstractmethod
    def delete(self, path: str) -> None:
        """Remove the object at the given remote path."""


@dataclass
class BackupOptions:
    """Controls how a backup runs."""

    force: bool = False
    verbose: bool = False
    on_progress: ProgressFunc | None = None


def _no_progress(group: str, stage: str, current: int, total: int, done: int, size: int) -> None:
    return None


def filter_groups(groups: Iterable[BackupGroup], names: Iterable[str]) -> list[BackupGroup]:
    """Return the groups whose names are listed, in their configured order."""
    wanted = set(names)
    return [group for group in groups if group.name in wanted]


def _read_pid(line: str) -> int | None:
    try:
        pid = int(line.strip())
    except ValueError:
        return None
    return pid if pid > 0 else None


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except (OSError, OverflowError):
        return False
    return True


def read_lock_status(lock_path: str | os.PathLike[str]) -> tuple[bool, list[str]]:
    """Return whether a backup is running and the names of its active groups.

    A missing, corrupt or stale lock file means no backup is running.
    """
    try:
        text = Path(lock_path).read_text(encoding="utf-8")
    except OSError:
        return False, []
    lines = text.strip().split("\n")
    pid = _read_pid(lines[0])
    if pid is None or not _process_alive(pid):
        return False, []
    return True, lines[1:]


def _parse_mod_time(text: str) -> datetime:
    try:
        return datetime.strptime(text, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
    except ValueError:
        return ZERO_TIME


class Engine:
    """Runs backups of configured groups into a storage backend."""

    def __init__(
        self,
        config: Config,
        storage: StorageBackend,
        state_db: StateDB,
        lock_path: str | os.PathLike[str],
        *,
        encrypt: Encryptor | None = None,
        run_hooks: HookRunner | None = None,
        max_workers: int = 2,
    ) -> None:
        if config.general.parallel_uploads == 0:
            config.general.parallel_uploads = 3
        self.config = config
        self.storage = storage
        self.state_db = state_db
        self.lock_path = Path(lock_path)
        self.max_workers = max_workers
        self._encrypt = encrypt
        self._hook_runner = run_hooks
        self._lock_mutex = threading.Lock()

    # -- running backups -------------------------------------------------

    def run(self, options: BackupOptions | None = None, *args: str) -> None:
        """Back up the named groups, or every configured group when none are named."""
        options = options or BackupOptions()
        with self._locked():
            try:
                self._call_hooks("pre-backup")
            except Exception as exc:
                raise BackupError(f"pre-backup hooks: {exc}") from exc

            groups = filter_groups(self.config.backups, args) if args else list(self.config.backups)
            try:
                self._write_lock_groups(groups)
            except OSError as exc:
                logger.warning("failed to update lock file with group names: %s", exc)

            with ThreadPoolExecutor(max_workers=max(1, self.max_workers)) as pool:
                errors = list(pool.map(lambda g: self._run_and_record(g, options), groups))

            try:
                self._call_hooks("post-backup")
            except Exception as exc:
                logger.warning("post-backup hooks failed: %s", exc)

        messages = [str(error) for error in errors if error is not None]
        if messages:
            raise BackupError("backup errors: " + "; ".join(messages))

    def _call_hooks(self, when: str) -> None:
        if self._hook_runner is not None:
            self._hook_runner(self.config.hooks, when)

    def _run_and_record(self, group: BackupGroup, options: BackupOptions) -> Exception | None:
        start = time.monotonic()
        error: Exception | None = None
        snapshot: Snapshot | None = None
        try:
            snapshot = self.run_group(group, options)
        except Exception as exc:
            error = exc
        duration = timedelta(seconds=time.monotonic() - start)

        self._remove_lock_group(group.name)

        try:
            if error is not None:
                logger.error("backup group %s failed: %s", group.name, error)
                self.state_db.record_backup_run(
                    group.name, "", "failure", str(error), duration, 0, 0
                )
            elif snapshot is not None:
                changed = snapshot.stats.changed_files + snapshot.stats.added_files
                logger.info(
                    "backup group %s completed: snapshot=%s changed=%d duration=%s",
                    group.name,
                    snapshot.id,
                    changed,
                    duration,
                )
                self.state_db.record_backup_run(
                    group.name,
                    snapshot.id,
                    "success",
                    "",
                    duration,
                    changed,
                    snapshot.stats.upload_size,
                )
            else:
                self.state_db.record_backup_run(group.name, "", "success", "", duration, 0, 0)
        except sqlite3.Error as exc:
            logger.warning("failed to record backup run for %s: %s", group.name, exc)
        return error

    def run_group(self, group: BackupGroup, options: BackupOptions | None = None) -> Snapshot | None:
        """Back up one group; return its new snapshot, or None if nothing changed."""
        options = options or BackupOptions()
        progress = options.on_progress or _no_progress
        logger.info("starting backup of %s", group.name)

        progress(group.name, "scanning", 0, 0, 0, 0)
        try:
            files = walk_paths(group.paths, group.exclude, group.include)
        except OSError as exc:
            raise BackupError(f"walking paths for {group.name}: {exc}") from exc
        total_size = sum(info.size for info in files)
        if options.verbose:
            logger.info(
                "scan complete for %s: %d files, %d bytes", group.name, len(files), total_size
            )

        try:
            last = self.state_db.get_last_snapshot(group.name)
        except (sqlite3.Error, SnapshotError) as exc:
            raise BackupError(f"getting last snapshot for {group.name}: {exc}") from exc
        last_hashes = {entry.path: entry.sha256 for entry in last.files} if last else {}

        entries: list[FileEntry] = []
        uploads: list[FileInfo] = []
        added = changed = 0
        for info in files:
            previous = last_hashes.get(info.path)
            if previous is None:
                status = "added"
                added += 1
            elif previous != info.sha256:
                status = "modified"
                changed += 1
            else:
                status = "unchanged"
            if options.verbose and status != "unchanged":
                logger.info("file %s in %s: %s (%d bytes)", status, group.name, info.path, info.size)
            entries.append(
                FileEntry(
                    path=info.path,
                    sha256=info.sha256,
                    size=info.size,
                    mode=info.mode,
                    mod_time=_parse_mod_time(info.mod_time),
                    encrypted=group.encrypt,
                    status=status,
                )
            )
            if status != "unchanged":
                uploads.append(info)
        upload_size = sum(info.size for info in uploads)

        if uploads:
            self._upload_all(group, uploads, upload_size, progress)

        deleted = 0
        current_paths = {info.path for info in files}
        if last is not None:
            for entry in last.files:
                if entry.path not in current_paths and entry.status != "deleted":
                    entries.append(FileEntry(path=entry.path, sha256=entry.sha256, status="deleted"))
                    deleted += 1
                    if options.verbose:
                        logger.info("file deleted in %s: %s", group.name, entry.path)

        if changed == 0 and added == 0 and deleted == 0:
            if options.force:
                logger.info("no changes detected in %s, forcing snapshot", group.name)
            else:
                logger.info("no changes detected in %s", group.name)
                progress(group.name, "done", len(files), len(files), 0, total_size)
                return None

        progress(group.name, "done", len(files), len(files), upload_size, total_size)

        snapshot = Snapshot(
            id=generate_snapshot_id(),
            timestamp=datetime.now(timezone.utc),
            machine_id=self.config.general.machine_id,
            machine_name=self.config.general.machine_name,
            group=group.name,
            files=entries,
            stats=SnapshotStats(
                total_files=len(files),
                changed_files=changed,
                added_files=added,
                deleted_files=deleted,
                total_size=total_size,
                upload_size=upload_size,
            ),
        )
        manifest = marshal_snapshot(snapshot)

        try:
            self.state_db.save_snapshot(snapshot)
        except sqlite3.Error as exc:
            raise BackupError(f"saving snapshot state: {exc}") from exc

        remote = f"{self.config.general.machine_id}/{manifest_path(group.name, snapshot.id)}"
        try:
            self.storage.upload(remote, manifest)
        except Exception as exc:
            try:
                self.state_db.delete_snapshot(snapshot.id)
            except sqlite3.Error as rollback_exc:
                logger.error("failed to roll back snapshot %s: %s", snapshot.id, rollback_exc)
            raise BackupError(f"uploading manifest: {exc}") from exc
        return snapshot

    def _upload_all(
        self,
        group: BackupGroup,
        uploads: list[FileInfo],
        upload_size: int,
        progress: ProgressFunc,
    ) -> None:
        counter_lock = threading.Lock()
        uploaded = 0

        def send(info: FileInfo) -> Exception | None:
            nonlocal uploaded
            try:
                self._upload_blob(info.path, info.sha256, group.encrypt)
            except Exception as exc:
                return BackupError(f"uploading blob {info.path}: {exc}")
            with counter_lock:
                uploaded += info.size
                done = uploaded
            progress(group.name, "uploading", done // 1024, upload_size // 1024, done, upload_size)
            return None

        workers = max(1, self.config.general.parallel_uploads)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            errors = list(pool.map(send, uploads))
        for error in errors:
            if error is not None:
                raise error

    def _upload_blob(self, file_path: str, sha256: str, encrypt: bool) -> None:
        try:
            data = Path(file_path).read_bytes()
        except OSError as exc:
            raise BackupError(f"reading file: {exc}") from exc

        current = hashlib.sha256(data).hexdigest()
        if current != sha256:
            raise BackupError(
                f"file modified during backup: {file_path} (expected {sha256}, got {current})"
            )

        name = blob_path(sha256)
        encryption = self.config.encryption
        if encrypt and encryption.enabled and encryption.recipient:
            if self._encrypt is None:
                raise BackupError("encryption requested but no encryptor is configured")
            try:
                data = self._encrypt(data, encryption.recipient)
            except Exception as exc:
                raise BackupError(f"encrypting: {exc}") from exc
            name += ".age"

        self.storage.upload(f"{self.config.general.machine_id}/{name}", data)

    def dry_run(self, *args: str) -> dict[str, list[FileChange]]:
        """Return, per group, the changes a backup would record; unchanged groups are left out."""
        groups = filter_groups(self.config.backups, args) if args else list(self.config.backups)
        result: dict[str, list[FileChange]] = {}
        for group in groups:
            try:
                files = walk_paths(group.paths, group.exclude, group.include)
            except OSError as exc:
                raise BackupError(f"walking {group.name}: {exc}") from exc
            try:
                last = self.state_db.get_last_snapshot(group.name)
            except (sqlite3.Error, SnapshotError):
                last = None
            current = Snapshot(
                files=[FileEntry(path=f.path, sha256=f.sha256, size=f.size) for f in files]
            )
            changes = diff_snapshots(last, current)
            if changes:
                result[group.name] = changes
        return result

    def garbage_collect(self) -> None:
        """Delete snapshots beyond both the retention count and the retention age."""
        versioning = self.config.versioning
        for group in self.config.backups:
            try:
                snapshots = self.state_db.list_snapshots(group.name)
            except sqlite3.Error as exc:
                raise BackupError(f"listing snapshots for {group.name}: {exc}") from exc

            cutoff = datetime.now(timezone.utc) - timedelta(days=versioning.retention_days)
            max_count = versioning.retention_count
            for index, snapshot in enumerate(snapshots):
                keep = max_count <= 0 or index < max_count
                if snapshot.timestamp > cutoff:
                    keep = True
                if keep:
                    continue
                logger.info("deleting expired snapshot %s of %s", snapshot.id, group.name)
                remote = f"{self.config.general.machine_id}/{manifest_path(group.name, snapshot.id)}"
                try:
                    self.storage.delete(remote)
                except Exception as exc:
                    logger.warning("failed to delete remote manifest %s: %s", remote, exc)
                try:
                    self.state_db.delete_snapshot(snapshot.id)
                except sqlite3.Error as exc:
                    logger.warning("failed to delete snapshot %s: %s", snapshot.id, exc)

    # -- locking ---------------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self._acquire_lock()
        try:
            yield
        finally:
            self._release_lock()

    def _create_lock(self) -> None:
        fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
        except OSError as exc:
            self._remove_lock_file()
            raise BackupError(f"writing lock file: {exc}") from exc

    def _remove_lock_file(self) -> None:
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass

    def _acquire_lock(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._create_lock()
            return
        except FileExistsError:
            pass
        except OSError as exc:
            raise BackupError(f"creating lock file: {exc}") from exc

        try:
            text = self.lock_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise LockError("another backup is already running") from exc

        pid = _read_pid(text.split("\n", 1)[0])
        if pid is not None and _process_alive(pid):
            raise LockError(f"another backup is already running (pid {pid})")
        if pid is not None:
            logger.info("removing stale lock file left by pid %d", pid)
        self._remove_lock_file()
        self._acquire_once()

    def _acquire_once(self) -> None:
        try:
            self._create_lock()
        except OSError as exc:
            raise LockError("another backup is already running") from exc

    def _release_lock(self) -> None:
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("failed to remove lock file: %s", exc)

    def _write_lock_groups(self, groups: Iterable[BackupGroup]) -> None:
        with self._lock_mutex:
            lines = [str(os.getpid())] + [group.name for group in groups]
            self.lock_path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")

    def _remove_lock_group(self, name: str) -> None:
        with self._lock_mutex:
            try:
                text = self.lock_path.read_text(encoding="utf-8")
            except OSError:
                return
            lines = text.strip().split("\n")
            kept = [lines[0]] + [line for line in lines[1:] if line.strip() != name]
            try:
                self.lock_path.write_text("".join(f"{line}\n" for line in kept), encoding="utf-8")
            except OSError as exc:
                logger.warning("failed to update lock file after group %s: %s", name, exc)
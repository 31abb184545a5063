"""Local SQLite state: saved snapshot manifests and the history of backup runs."""

import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from packrat.snapshot import ZERO_TIME, Snapshot, SnapshotError, marshal_snapshot, unmarshal_snapshot

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS snapshots (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    machine_id TEXT NOT NULL,
    group_name TEXT NOT NULL,
    manifest TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS backup_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    group_name TEXT NOT NULL,
    snapshot_id TEXT,
    status TEXT NOT NULL,
    error_msg TEXT,
    duration_ms INTEGER,
    files_changed INTEGER,
    bytes_uploaded INTEGER
);

CREATE INDEX IF NOT EXISTS idx_snapshots_group ON snapshots(group_name);
CREATE INDEX IF NOT EXISTS idx_backup_runs_group ON backup_runs(group_name);
"""


def _format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_timestamp(text: str) -> datetime:
    return datetime.fromisoformat(text).astimezone(timezone.utc)


@dataclass
class BackupRecord:
    """One historical backup run."""

    id: int
    timestamp: datetime
    group: str
    snapshot_id: str
    status: str
    error: str
    duration: timedelta
    files_changed: int
    bytes_uploaded: int


class StateDB:
    """The local state database, safe to share between threads."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._conn = sqlite3.connect(os.fspath(path), check_same_thread=False)
        self._lock = threading.Lock()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error:
            self._conn.close()
            raise

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "StateDB":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def save_snapshot(self, snapshot: Snapshot) -> None:
        """Store a snapshot manifest, replacing any with the same ID."""
        manifest = marshal_snapshot(snapshot).decode("utf-8")
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO snapshots "
                "(id, timestamp, machine_id, group_name, manifest) VALUES (?, ?, ?, ?, ?)",
                (
                    snapshot.id,
                    _format_timestamp(snapshot.timestamp),
                    snapshot.machine_id,
                    snapshot.group,
                    manifest,
                ),
            )

    def _query(self, sql: str, params: tuple = ()) -> list[tuple]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def get_last_snapshot(self, group: str) -> Snapshot | None:
        """Return the most recent snapshot of a group, or None if there is none."""
        rows = self._query(
            "SELECT manifest FROM snapshots WHERE group_name = ? "
            "ORDER BY timestamp DESC LIMIT 1",
            (group,),
        )
        return unmarshal_snapshot(rows[0][0]) if rows else None

    def list_snapshots(self, group: str = "") -> list[Snapshot]:
        """Return the snapshots of a group (all groups when empty), newest first.

        Manifests that cannot be decoded are skipped with a warning.
        """
        sql = "SELECT manifest FROM snapshots"
        params: tuple = ()
        if group:
            sql += " WHERE group_name = ?"
            params = (group,)
        sql += " ORDER BY timestamp DESC"

        snapshots = []
        for (manifest,) in self._query(sql, params):
            try:
                snapshots.append(unmarshal_snapshot(manifest))
            except SnapshotError as exc:
                logger.warning("skipping corrupted snapshot manifest: %s", exc)
        return snapshots

    def record_backup_run(
        self,
        group: str,
        snapshot_id: str,
        status: str,
        error_msg: str,
        duration: timedelta,
        files_changed: int,
        bytes_uploaded: int,
    ) -> None:
        """Save a record of one backup run, timestamped now."""
        duration_ms = int(duration / timedelta(milliseconds=1))
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO backup_runs (timestamp, group_name, snapshot_id, status, "
                "error_msg, duration_ms, files_changed, bytes_uploaded) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    _format_timestamp(datetime.now(timezone.utc)),
                    group,
                    snapshot_id,
                    status,
                    error_msg,
                    duration_ms,
                    files_changed,
                    bytes_uploaded,
                ),
            )

    def get_backup_history(self, group: str = "", limit: int = 0) -> list[BackupRecord]:
        """Return recent backup runs, newest first; a limit of 0 or less means all."""
        sql = (
            "SELECT id, timestamp, group_name, COALESCE(snapshot_id, ''), status, "
            "COALESCE(error_msg, ''), COALESCE(duration_ms, 0), "
            "COALESCE(files_changed, 0), COALESCE(bytes_uploaded, 0) FROM backup_runs"
        )
        params: list[Any] = []
        if group:
            sql += " WHERE group_name = ?"
            params.append(group)
        sql += " ORDER BY timestamp DESC"
        if limit > 0:
            sql += " LIMIT ?"
            params.append(limit)

        records = []
        for row in self._query(sql, tuple(params)):
            run_id, ts, group_name, snap_id, status, error, duration_ms, files, size = row
            try:
                timestamp = _parse_timestamp(ts)
            except ValueError:
                timestamp = ZERO_TIME
            records.append(
                BackupRecord(
                    id=run_id,
                    timestamp=timestamp,
                    group=group_name,
                    snapshot_id=snap_id,
                    status=status,
                    error=error,
                    duration=timedelta(milliseconds=duration_ms),
                    files_changed=files,
                    bytes_uploaded=size,
                )
            )
        return records

    def get_last_backup_time(self, group: str) -> datetime | None:
        """Return the time of the last successful run of a group, or None."""
        rows = self._query(
            "SELECT timestamp FROM backup_runs WHERE group_name = ? AND status = 'success' "
            "ORDER BY timestamp DESC LIMIT 1",
            (group,),
        )
        return _parse_timestamp(rows[0][0]) if rows else None

    def delete_snapshot(self, snapshot_id: str) -> None:
        """Remove a snapshot from the database."""
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM snapshots WHERE id = ?", (snapshot_id,))

    def get_snapshot_by_id(self, snapshot_id: str) -> Snapshot | None:
        """Return the snapshot with the given ID, or None."""
        rows = self._query("SELECT manifest FROM snapshots WHERE id = ?", (snapshot_id,))
        return unmarshal_snapshot(rows[0][0]) if rows else None
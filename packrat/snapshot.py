"""Snapshot manifests: the data model, its JSON encoding and the remote layout."""

import json
import secrets
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


class SnapshotError(ValueError):
    """A snapshot manifest could not be decoded."""


@dataclass
class FileEntry:
    """A file within a snapshot."""

    path: str = ""
    sha256: str = ""
    size: int = 0
    mode: int = 0
    mod_time: datetime = ZERO_TIME
    encrypted: bool = False
    status: str = ""  # "added", "modified", "deleted" or "unchanged"


@dataclass
class SnapshotStats:
    """Summary statistics for a snapshot."""

    total_files: int = 0
    changed_files: int = 0
    added_files: int = 0
    deleted_files: int = 0
    total_size: int = 0
    upload_size: int = 0


@dataclass
class Snapshot:
    """A point-in-time backup of one group."""

    id: str = ""
    timestamp: datetime = ZERO_TIME
    machine_id: str = ""
    machine_name: str = ""
    group: str = ""
    files: list[FileEntry] = field(default_factory=list)
    stats: SnapshotStats = field(default_factory=SnapshotStats)


def _format_time(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.isoformat()
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def _parse_time(text: Any) -> datetime:
    if text is None:
        return ZERO_TIME
    if not isinstance(text, str):
        raise SnapshotError(f"invalid time {text!r}")
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise SnapshotError(f"invalid time {text!r}") from exc


def _known(cls: type, data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise SnapshotError(f"{cls.__name__}: expected an object")
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in data.items() if key in names and value is not None}


def generate_snapshot_id() -> str:
    """Return a new ID of the form snap-YYYYMMDD-HHMMSS-<4 hex digits>."""
    now = datetime.now(timezone.utc)
    return f"snap-{now.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(2)}"


def marshal_snapshot(snapshot: Snapshot) -> bytes:
    """Serialise a snapshot to indented JSON."""
    document = asdict(snapshot)
    document["timestamp"] = _format_time(snapshot.timestamp)
    for entry, original in zip(document["files"], snapshot.files):
        entry["mod_time"] = _format_time(original.mod_time)
    return json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")


def unmarshal_snapshot(data: bytes | str) -> Snapshot:
    """Deserialise a snapshot from JSON, raising SnapshotError on bad input."""
    try:
        document = _known(Snapshot, json.loads(data))
        files = document.pop("files", [])
        if not isinstance(files, list):
            raise SnapshotError("files: expected an array")
        entries = []
        for item in files:
            entry = _known(FileEntry, item)
            entry["mod_time"] = _parse_time(entry.get("mod_time"))
            entries.append(FileEntry(**entry))
        return Snapshot(
            **{**document, "timestamp": _parse_time(document.get("timestamp"))},
            files=entries,
            stats=SnapshotStats(**_known(SnapshotStats, document.pop("stats", {}))),
        )
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as exc:
        raise SnapshotError(f"unmarshaling snapshot: {exc}") from exc


def blob_path(sha256: str) -> str:
    """Return the content-addressed path of a blob: blobs/<first 2>/<rest>."""
    if len(sha256) < 2:
        return sha256
    return f"blobs/{sha256[:2]}/{sha256[2:]}"


def manifest_path(group: str, snapshot_id: str) -> str:
    """Return the remote path of a snapshot manifest."""
    return f"manifests/{group}/{snapshot_id}.json"
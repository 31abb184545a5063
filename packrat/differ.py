"""Walking and hashing local files, and comparing snapshots and contents."""

import difflib
import hashlib
import os
import re
import stat
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime, timezone

from packrat.snapshot import FileEntry, Snapshot

_DELETE_COLOUR = "\x1b[31m"
_INSERT_COLOUR = "\x1b[32m"
_RESET = "\x1b[0m"


@dataclass
class FileInfo:
    """Metadata about a local file."""

    path: str
    sha256: str
    size: int
    mode: int
    mod_time: str


@dataclass
class FileChange:
    """A change to one path between two snapshots."""

    path: str
    status: str  # "added", "modified" or "deleted"
    old_entry: FileEntry | None = None
    new_entry: FileEntry | None = None


def compute_file_hash(path: str | os.PathLike[str]) -> str:
    """Return the hex SHA-256 digest of a file's contents."""
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 16), b""):
            digest.update(chunk)
    return digest.hexdigest()


class _BadPattern(Exception):
    pass


def _class_char(pattern: str, pos: int) -> tuple[str, int]:
    if pos >= len(pattern) or pattern[pos] in "-]":
        raise _BadPattern
    if pattern[pos] == "\\":
        pos += 1
        if pos >= len(pattern):
            raise _BadPattern
    return pattern[pos], pos + 1


def _translate(pattern: str) -> str:
    out: list[str] = []
    pos = 0
    while pos < len(pattern):
        char = pattern[pos]
        if char == "*":
            out.append("[^/]*")
            pos += 1
        elif char == "?":
            out.append("[^/]")
            pos += 1
        elif char == "\\":
            if pos + 1 >= len(pattern):
                raise _BadPattern
            out.append(re.escape(pattern[pos + 1]))
            pos += 2
        elif char == "[":
            pos += 1
            negate = pos < len(pattern) and pattern[pos] == "^"
            if negate:
                pos += 1
            items: list[str] = []
            while True:
                if pos >= len(pattern):
                    raise _BadPattern
                if pattern[pos] == "]" and items:
                    pos += 1
                    break
                low, pos = _class_char(pattern, pos)
                if pos < len(pattern) and pattern[pos] == "-":
                    high, pos = _class_char(pattern, pos + 1)
                    if high < low:
                        raise _BadPattern
                    items.append(f"{re.escape(low)}-{re.escape(high)}")
                else:
                    items.append(re.escape(low))
            out.append("[" + ("^" if negate else "") + "".join(items) + "]")
        else:
            out.append(re.escape(char))
            pos += 1
    return "".join(out)


def _match(pattern: str, name: str) -> bool:
    """Shell-style match where "*" and "?" never cross a "/"; bad patterns match nothing."""
    try:
        regex = _translate(pattern)
    except _BadPattern:
        return False
    return re.fullmatch(regex, name, re.DOTALL) is not None


def _base(path: str) -> str:
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def should_include(path: str, includes: Iterable[str] | None) -> bool:
    """Return True if no includes are given or the path matches one of them."""
    includes = list(includes or [])
    if not includes:
        return True
    base = _base(path)
    return any(_match(p, base) or _match(p, path) for p in includes)


def should_exclude(path: str, excludes: Iterable[str] | None) -> bool:
    """Return True if the path matches an exclude pattern.

    A pattern ending in "/" names a directory excluded wherever it appears.
    """
    base = _base(path)
    for pattern in excludes or []:
        if _match(pattern, base) or _match(pattern, path):
            return True
        if pattern.endswith("/"):
            dir_name = pattern[:-1]
            if base == dir_name or f"/{dir_name}/" in path:
                return True
    return False


def walk_paths(
    paths: Iterable[str | os.PathLike[str]],
    excludes: Iterable[str] | None = None,
    includes: Iterable[str] | None = None,
) -> list[FileInfo]:
    """Collect hashed file information under the given paths.

    Missing paths are skipped; unreadable entries are ignored. Includes, when
    given, keep only matching files; excludes are applied as well.
    """
    excludes = list(excludes or [])
    includes = list(includes or [])
    seen: set[str] = set()

    def describe(path: str, info: os.stat_result) -> FileInfo | None:
        if should_exclude(path, excludes) or not should_include(path, includes):
            return None
        if path in seen:
            return None
        seen.add(path)
        try:
            digest = compute_file_hash(path)
        except OSError:
            return None
        mod_time = datetime.fromtimestamp(info.st_mtime, timezone.utc)
        return FileInfo(
            path=path,
            sha256=digest,
            size=info.st_size,
            mode=stat.S_IMODE(info.st_mode),
            mod_time=mod_time.strftime("%Y-%m-%dT%H:%M:%SZ"),
        )

    def walk(path: str, info: os.stat_result) -> Iterator[FileInfo]:
        if stat.S_ISDIR(info.st_mode):
            if should_exclude(path, excludes):
                return
            try:
                names = sorted(os.listdir(path))
            except OSError:
                return
            for name in names:
                child = os.path.join(path, name)
                try:
                    child_info = os.lstat(child)
                except OSError:
                    continue
                yield from walk(child, child_info)
            return
        found = describe(path, info)
        if found is not None:
            yield found

    files: list[FileInfo] = []
    for raw in paths:
        path = os.fspath(raw)
        try:
            info = os.stat(path)
        except FileNotFoundError:
            continue
        if stat.S_ISDIR(info.st_mode):
            try:
                root_info = os.lstat(path)
            except OSError:
                continue
            files.extend(walk(path, root_info))
        else:
            found = describe(path, info)
            if found is not None:
                files.append(found)
    return files


def diff_snapshots(old: Snapshot | None, new: Snapshot | None) -> list[FileChange]:
    """Return the modified, deleted and added files between two snapshots."""
    old_map = {entry.path: entry for entry in old.files} if old else {}
    new_map = {entry.path: entry for entry in new.files} if new else {}

    changes: list[FileChange] = []
    for path, old_entry in old_map.items():
        new_entry = new_map.get(path)
        if new_entry is None:
            changes.append(FileChange(path=path, status="deleted", old_entry=old_entry))
        elif old_entry.sha256 != new_entry.sha256:
            changes.append(
                FileChange(path=path, status="modified", old_entry=old_entry, new_entry=new_entry)
            )
    for path, new_entry in new_map.items():
        if path not in old_map:
            changes.append(FileChange(path=path, status="added", new_entry=new_entry))
    return changes


def content_diff(old_content: str, new_content: str) -> str:
    """Return a character diff with deletions in red and insertions in green."""
    matcher = difflib.SequenceMatcher(None, old_content, new_content, autojunk=False)
    parts: list[str] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            parts.append(old_content[i1:i2])
            continue
        if tag in ("delete", "replace"):
            parts.append(f"{_DELETE_COLOUR}{old_content[i1:i2]}{_RESET}")
        if tag in ("insert", "replace"):
            parts.append(f"{_INSERT_COLOUR}{new_content[j1:j2]}{_RESET}")
    return "".join(parts)


def unified_diff(old_content: str, new_content: str, old_name: str, new_name: str) -> str:
    """Return a unified diff of two texts; empty when they are equal."""
    lines = difflib.unified_diff(
        old_content.splitlines(keepends=True),
        new_content.splitlines(keepends=True),
        fromfile=old_name,
        tofile=new_name,
    )
    return "".join(line if line.endswith("\n") else line + "\n" for line in lines)
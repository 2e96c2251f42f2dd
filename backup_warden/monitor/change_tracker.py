"""Change detection for the watched folder.

A Signature summarises the modification state of the whole tree so the
scheduler can skip a tick without copying anything.
"""

import hashlib
import logging
import os
import stat
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from backup_warden.errors import WatchFolderUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Signature:
    digest: str
    file_count: int
    dir_count: int
    total_bytes: int
    latest_mtime_ns: int


def compute_signature(watch_folder) -> Signature:
    """Walk ``watch_folder`` and summarise every entry's size and mtime.

    Symbolic links are recorded by their target and never followed, which
    matches how the snapshot copy stores them. Raises WatchFolderUnavailable
    if the root, or any directory under it, cannot be listed. Entries that
    disappear while walking are skipped.
    """
    root = Path(watch_folder)
    try:
        root_stat = root.stat()
    except OSError as exc:
        raise WatchFolderUnavailable(root, exc.strerror or str(exc)) from exc
    if not root.is_dir():
        raise WatchFolderUnavailable(root, "not a directory")

    def _raise(err: OSError):
        raise WatchFolderUnavailable(err.filename or root, err.strerror or str(err)) from err

    entries: list[tuple[str, str, int, int]] = []
    file_count = dir_count = total_bytes = 0
    latest = root_stat.st_mtime_ns

    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
        dirnames.sort()
        rel_dir = os.path.relpath(dirpath, root)
        for name in dirnames + sorted(filenames):
            full = os.path.join(dirpath, name)
            try:
                st = os.lstat(full)
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise WatchFolderUnavailable(full, exc.strerror or str(exc)) from exc

            if stat.S_ISLNK(st.st_mode):
                try:
                    kind = "l:" + os.readlink(full)
                except FileNotFoundError:
                    continue
                size = 0
            elif stat.S_ISDIR(st.st_mode):
                kind = "d"
                dir_count += 1
                size = 0
            else:
                kind = "f"
                file_count += 1
                size = st.st_size
                total_bytes += size
            latest = max(latest, st.st_mtime_ns)
            entries.append((os.path.join(rel_dir, name), kind, size, st.st_mtime_ns))

    h = hashlib.sha256()
    for rel, kind, size, mtime in sorted(entries):
        h.update(f"{rel}\0{kind}\0{size}\0{mtime}\n".encode("utf-8", "surrogateescape"))

    return Signature(
        digest=h.hexdigest(),
        file_count=file_count,
        dir_count=dir_count,
        total_bytes=total_bytes,
        latest_mtime_ns=latest,
    )


def has_changed_since(last: Signature | None, current: Signature) -> bool:
    """True on the first run or when the tree differs from ``last``."""
    return last is None or last != current


class ChangeTracker:
    """Remembers the signature of the last successful backup.

    ``record_backup`` is called only by the scheduler's coordinating thread;
    readers may call ``has_changed`` from anywhere.
    """

    def __init__(self, watch_folder):
        self.watch_folder = Path(watch_folder)
        self._lock = threading.Lock()
        self._last_signature: Signature | None = None
        self._last_backup_at: datetime | None = None

    @property
    def last_signature(self) -> Signature | None:
        with self._lock:
            return self._last_signature

    @property
    def last_backup_at(self) -> datetime | None:
        with self._lock:
            return self._last_backup_at

    def current_signature(self) -> Signature:
        return compute_signature(self.watch_folder)

    def has_changed(self, current: Signature) -> bool:
        return has_changed_since(self.last_signature, current)

    def record_backup(self, signature: Signature, timestamp: datetime):
        with self._lock:
            self._last_signature = signature
            self._last_backup_at = timestamp
        logger.debug("Recorded backup signature %s at %s",
                     signature.digest[:12], timestamp.isoformat())

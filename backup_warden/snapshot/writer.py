"""Snapshot copying.

Copies the watch folder into the hourly slot of a backup location and then
mirrors that slot into the location's monthly snapshot.

Every copy goes into a hidden ``.<name>.incomplete`` sibling first and is
renamed into place only once ``shutil.copytree`` reports no errors, so a
failed copy never shows up under a snapshot name. Symbolic links are copied
as links, so a dangling link in the watch folder is preserved rather than
failing the copy.
"""

import logging
import os
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import psutil

from backup_warden.errors import PartialCopyFailure
from backup_warden.snapshot.naming import snapshot_entry, staging_path

logger = logging.getLogger(__name__)

# Daily copy plus monthly mirror
SPACE_HEADROOM_FACTOR = 2


class CopyInterrupted(OSError):
    """Raised per file once shutdown has been requested."""


@dataclass
class WriteResult:
    location: Path
    timestamp: datetime
    daily_path: Path
    month_path: Path
    success: bool
    files_copied: int = 0
    bytes_copied: int = 0
    error: Exception | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "location": str(self.location),
            "timestamp": self.timestamp.isoformat(),
            "daily_path": str(self.daily_path),
            "month_path": str(self.month_path),
            "success": self.success,
            "files_copied": self.files_copied,
            "bytes_copied": self.bytes_copied,
            "error": str(self.error) if self.error else None,
            "warnings": list(self.warnings),
        }


def tree_size(path) -> int:
    """Total size in bytes of the regular files under ``path``."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            try:
                total += os.path.getsize(os.path.join(dirpath, name))
            except OSError:
                pass
    return total


class SnapshotWriter:
    """Writes hourly and monthly snapshots into backup locations.

    Usage::

        writer = SnapshotWriter()
        result = writer.write("/home/user/Documents", "/mnt/backup", datetime.now())
        if not result.success:
            print(result.error)
    """

    def __init__(self, copy_function=shutil.copy2,
                 stop_event: threading.Event | None = None):
        self._copy_function = copy_function
        self.stop_event = stop_event

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def write(self, watch_folder, location, timestamp: datetime) -> WriteResult:
        """Snapshot ``watch_folder`` into ``location`` for ``timestamp``.

        Never raises for filesystem problems; they are reported through
        ``WriteResult.error``.
        """
        entry = snapshot_entry(timestamp, location)
        result = WriteResult(
            location=entry.location,
            timestamp=timestamp,
            daily_path=entry.daily_path,
            month_path=entry.month_path,
            success=False,
        )

        if not entry.location.is_dir():
            result.error = PartialCopyFailure(
                entry.location, "daily",
                [(str(watch_folder), str(entry.location), "backup location is not a directory")],
            )
            logger.error("Backup to %s failed: %s", entry.location, result.error)
            return result

        warning = self._check_free_space(Path(watch_folder), entry.location)
        if warning:
            result.warnings.append(warning)

        try:
            stats = self._copy_into_place(Path(watch_folder), entry.daily_path,
                                          entry.location, "daily")
            result.files_copied, result.bytes_copied = stats
            self._copy_into_place(entry.daily_path, entry.month_path,
                                  entry.location, "monthly")
        except PartialCopyFailure as exc:
            result.error = exc
            logger.error("Backup to %s failed: %s", entry.location, exc)
            return result

        result.success = True
        logger.info("Backed up %s -> %s (%d files, %d bytes; monthly %s)",
                    watch_folder, entry.daily_path, result.files_copied,
                    result.bytes_copied, entry.month_path.name)
        return result

    # ------------------------------------------------------------------
    # Copy helpers
    # ------------------------------------------------------------------

    def _copy_into_place(self, source: Path, final: Path, location: Path,
                         stage: str) -> tuple[int, int]:
        """Copy ``source`` to a staging folder and swap it in as ``final``."""
        staging = staging_path(final)
        copied = [0, 0]

        def copy_file(src, dst, *, follow_symlinks=True):
            if self._stopping():
                raise CopyInterrupted(f"shutdown requested before copying {src}")
            out = self._copy_function(src, dst, follow_symlinks=follow_symlinks)
            copied[0] += 1
            copied[1] += os.path.getsize(dst)
            return out

        def skip_on_shutdown(dirpath, names):
            if self._stopping():
                return set(names)
            return set()

        try:
            if staging.exists():
                shutil.rmtree(staging)
            final.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source, staging, symlinks=True,
                            ignore=skip_on_shutdown, copy_function=copy_file)
            if self._stopping():
                raise shutil.Error([(str(source), str(staging), "shutdown requested")])
        except shutil.Error as exc:
            self._discard(staging)
            raise PartialCopyFailure(location, stage, exc.args[0]) from exc
        except OSError as exc:
            self._discard(staging)
            raise PartialCopyFailure(
                location, stage,
                [(str(exc.filename or source), str(staging), exc.strerror or str(exc))],
            ) from exc

        try:
            if final.exists():
                shutil.rmtree(final)
            os.replace(staging, final)
        except OSError as exc:
            self._discard(staging)
            raise PartialCopyFailure(
                location, stage,
                [(str(staging), str(final), exc.strerror or str(exc))],
            ) from exc

        return copied[0], copied[1]

    def _stopping(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    @staticmethod
    def _discard(staging: Path):
        try:
            if staging.exists():
                shutil.rmtree(staging)
        except OSError as exc:
            logger.warning("Leaving incomplete copy at %s: %s", staging, exc)

    @staticmethod
    def _check_free_space(watch_folder: Path, location: Path) -> str | None:
        try:
            free = psutil.disk_usage(str(location)).free
        except OSError:
            return None
        needed = tree_size(watch_folder) * SPACE_HEADROOM_FACTOR
        if free < needed:
            msg = (f"Low disk space on {location}: {free} bytes free, "
                   f"snapshot needs about {needed}")
            logger.warning(msg)
            return msg
        return None

"""Retention enforcement for daily snapshots.

Daily date folders older than the retention window are deleted. The
``monthly`` tree and any folder whose name is not a ``YYYY-MM-DD`` date
are never touched.
"""

import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path

from backup_warden.errors import PruneFailure
from backup_warden.snapshot.naming import parse_daily_folder

logger = logging.getLogger(__name__)


@dataclass
class PruneResult:
    location: Path
    cutoff: date
    deleted: list[Path] = field(default_factory=list)
    retained: list[Path] = field(default_factory=list)
    failures: list[PruneFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def retention_cutoff(now: datetime, retention_days: int) -> date:
    """Oldest daily folder date that is kept."""
    return now.date() - timedelta(days=retention_days)


class RetentionPruner:
    """Deletes daily snapshot folders outside the retention window."""

    def prune(self, location, now: datetime, retention_days: int) -> PruneResult:
        """Delete every daily folder dated strictly before the cutoff.

        A folder dated exactly ``retention_days`` before ``now`` is kept.
        Failures are collected per folder and pruning carries on.
        """
        root = Path(location)
        result = PruneResult(location=root, cutoff=retention_cutoff(now, retention_days))

        try:
            names = sorted(os.listdir(root))
        except OSError as exc:
            failure = PruneFailure(root, exc.strerror or str(exc))
            result.failures.append(failure)
            logger.warning("%s", failure)
            return result

        for name in names:
            folder_date = parse_daily_folder(name)
            path = root / name
            if folder_date is None or not path.is_dir():
                continue
            if folder_date >= result.cutoff:
                result.retained.append(path)
                continue
            try:
                shutil.rmtree(path)
            except OSError as exc:
                failure = PruneFailure(path, exc.strerror or str(exc))
                result.failures.append(failure)
                logger.warning("%s", failure)
                continue
            result.deleted.append(path)

        if result.deleted:
            logger.info("Retention cleanup on %s: removed %d daily folder(s) older than %s",
                        root, len(result.deleted), result.cutoff.isoformat())
        return result

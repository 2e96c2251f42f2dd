"""Canonical snapshot paths.

Layout of a backup location::

    <root>/
    +-- 2024-03-15/
    |   +-- 09/         hourly copy of the watch folder
    |   +-- 10/
    +-- monthly/
        +-- 2024-03/    latest copy taken in March 2024
"""

from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path

DAILY_DIR_FORMAT = "%Y-%m-%d"
HOUR_DIR_FORMAT = "%H"
MONTH_DIR_FORMAT = "%Y-%m"
MONTHLY_DIR = "monthly"
INCOMPLETE_SUFFIX = ".incomplete"


@dataclass(frozen=True)
class SnapshotEntry:
    """Where one backup of one location is written."""
    timestamp: datetime
    location: Path
    daily_path: Path
    month_path: Path


def daily_path(ts: datetime, root) -> Path:
    return Path(root) / ts.strftime(DAILY_DIR_FORMAT) / ts.strftime(HOUR_DIR_FORMAT)


def month_path(ts: datetime, root) -> Path:
    return Path(root) / MONTHLY_DIR / ts.strftime(MONTH_DIR_FORMAT)


def snapshot_entry(ts: datetime, root) -> SnapshotEntry:
    return SnapshotEntry(
        timestamp=ts,
        location=Path(root),
        daily_path=daily_path(ts, root),
        month_path=month_path(ts, root),
    )


def hour_slot(ts: datetime) -> tuple[date, int]:
    return ts.date(), ts.hour


def staging_path(final: Path) -> Path:
    """Sibling folder a snapshot is copied into before it is swapped in.

    A leftover staging folder is the explicit marker of an incomplete copy.
    """
    return final.parent / f".{final.name}{INCOMPLETE_SUFFIX}"


def parse_daily_folder(name: str) -> date | None:
    """Return the date of a daily folder name, or None for anything else."""
    if len(name) != 10 or name.startswith("."):
        return None
    try:
        return datetime.strptime(name, DAILY_DIR_FORMAT).date()
    except ValueError:
        return None

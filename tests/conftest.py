"""Shared fixtures for the backup warden tests."""

import os
from datetime import datetime
from pathlib import Path

import pytest

from backup_warden.config import WardenConfig


class FakeClock:
    """Callable clock whose time the test moves by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def snapshot_tree(root: Path) -> dict[str, tuple[int, int]]:
    """Map every path under ``root`` to (size, mtime_ns) for before/after checks."""
    state = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            full = os.path.join(dirpath, name)
            st = os.stat(full)
            state[os.path.relpath(full, root)] = (st.st_size, st.st_mtime_ns)
    return state


def read_tree(root: Path) -> dict[str, str]:
    """Map every file under ``root`` to its text content."""
    return {
        str(p.relative_to(root)): p.read_text()
        for p in sorted(root.rglob("*")) if p.is_file()
    }


@pytest.fixture
def watch_dir(tmp_path):
    """A small watched tree with a nested folder."""
    d = tmp_path / "watched"
    (d / "docs" / "nested").mkdir(parents=True)
    (d / "notes.txt").write_text("first notes")
    (d / "docs" / "report.txt").write_text("quarterly report")
    (d / "docs" / "nested" / "deep.bin").write_bytes(b"\x00\x01\x02" * 10)
    return d


@pytest.fixture
def location_a(tmp_path):
    d = tmp_path / "backup_a"
    d.mkdir()
    return d


@pytest.fixture
def location_b(tmp_path):
    d = tmp_path / "backup_b"
    d.mkdir()
    return d


@pytest.fixture
def make_config(watch_dir, location_a, location_b):
    """Build a WardenConfig without touching the JSON loader."""
    def _make(locations=None, **overrides):
        fields = {
            "watch_folder": watch_dir,
            "backup_locations": tuple(locations or (location_a, location_b)),
            "retention_days": 30,
            "watch_events": False,
        }
        fields.update(overrides)
        return WardenConfig(**fields)
    return _make

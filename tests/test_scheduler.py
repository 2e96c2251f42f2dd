"""Tests for the scheduler loop.

Covers:
- No-op stability when nothing changed
- First-run backup
- Signature tracking across failed and partial cycles
- Retrying locations that failed on an earlier cycle
- Multi-location independence
- Pruning regardless of write outcome
- Change hints limited to one attempt per hour slot
- The blocking run loop and shutdown
"""

import os
import shutil
import threading
import time
from datetime import date, datetime, timedelta

import pytest

from backup_warden.errors import ConfigInvalid
from backup_warden.scheduler import (
    OUTCOME_DEFERRED,
    OUTCOME_FAILED,
    OUTCOME_UNAVAILABLE,
    OUTCOME_UNCHANGED,
    OUTCOME_WRITTEN,
    STATE_IDLE,
    TRIGGER_CHANGE,
    SchedulerLoop,
)
from backup_warden.snapshot.pruner import RetentionPruner
from backup_warden.snapshot.writer import SnapshotWriter

from conftest import FakeClock, read_tree, snapshot_tree

START = datetime(2024, 3, 15, 10, 5)


def wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def loop(make_config, clock):
    return SchedulerLoop(make_config(), clock=clock)


class ExplodingWriter(SnapshotWriter):
    def write(self, watch_folder, location, timestamp):
        raise RuntimeError("disk controller on fire")


class ExplodingPruner(RetentionPruner):
    def prune(self, location, now, retention_days):
        raise RuntimeError("pruner bug")


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

class TestConstruction:
    def test_no_locations_is_fatal(self, make_config):
        config = make_config()
        object.__setattr__(config, "backup_locations", ())
        with pytest.raises(ConfigInvalid):
            SchedulerLoop(config)

    def test_starts_idle(self, loop):
        assert loop.state == STATE_IDLE
        assert loop.tracker.last_signature is None


# ---------------------------------------------------------------------------
# Evaluating
# ---------------------------------------------------------------------------

class TestEvaluation:
    def test_first_run_writes(self, loop, location_a, location_b, watch_dir):
        report = loop.tick()

        assert report.outcome == OUTCOME_WRITTEN
        for loc in (location_a, location_b):
            assert read_tree(loc / "2024-03-15" / "10") == read_tree(watch_dir)
            assert read_tree(loc / "monthly" / "2024-03") == read_tree(watch_dir)
        assert loop.tracker.last_backup_at == START
        assert loop.state == STATE_IDLE

    def test_no_op_stability(self, loop, clock, location_a, location_b):
        loop.tick()
        before = {loc: snapshot_tree(loc) for loc in (location_a, location_b)}

        clock.now = START + timedelta(hours=1)
        report = loop.tick()

        assert report.outcome == OUTCOME_UNCHANGED
        assert report.write_results == []
        assert report.prune_results == []
        assert not (location_a / "2024-03-15" / "11").exists()
        for loc in (location_a, location_b):
            assert snapshot_tree(loc) == before[loc]

    def test_change_triggers_next_write(self, loop, clock, watch_dir, location_a):
        loop.tick()
        (watch_dir / "notes.txt").write_text("updated notes")
        clock.now = START + timedelta(hours=1)

        report = loop.tick()

        assert report.outcome == OUTCOME_WRITTEN
        assert (location_a / "2024-03-15" / "11" / "notes.txt").read_text() == "updated notes"
        assert (location_a / "2024-03-15" / "10" / "notes.txt").read_text() == "first notes"
        assert (location_a / "monthly" / "2024-03" / "notes.txt").read_text() == "updated notes"

    def test_watch_folder_unavailable(self, loop, clock, watch_dir, location_a):
        shutil.rmtree(watch_dir)
        report = loop.tick()

        assert report.outcome == OUTCOME_UNAVAILABLE
        assert "unavailable" in report.error.lower()
        assert os.listdir(location_a) == []
        assert loop.state == STATE_IDLE

        watch_dir.mkdir()
        (watch_dir / "back.txt").write_text("back again")
        clock.now = START + timedelta(hours=1)
        assert loop.tick().outcome == OUTCOME_WRITTEN


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------

class TestWriting:
    def test_one_unwritable_location(self, make_config, clock, tmp_path, location_a):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file where a folder should be")
        old = location_a / "2024-01-01" / "09"
        old.mkdir(parents=True)
        loop = SchedulerLoop(make_config(locations=(blocker, location_a)), clock=clock)

        report = loop.tick()

        assert report.outcome == OUTCOME_WRITTEN
        assert report.failed_locations == [blocker]
        assert report.succeeded_locations == [location_a]
        assert (location_a / "2024-03-15" / "10").is_dir()
        # the healthy location is still pruned on the same cycle
        assert not old.parent.exists()
        assert len(report.prune_results) == 2
        assert not report.prune_results[0].ok
        assert loop.tracker.last_signature is not None

    def test_location_removed_mid_run(self, loop, clock, watch_dir, location_a, location_b):
        loop.tick()
        shutil.rmtree(location_b)
        (watch_dir / "notes.txt").write_text("changed after unplug")
        clock.now = START + timedelta(hours=1)

        report = loop.tick()

        assert report.succeeded_locations == [location_a]
        assert report.failed_locations == [location_b]
        assert not location_b.exists()

    def test_all_locations_fail_keeps_signature(self, make_config, clock, tmp_path):
        loop = SchedulerLoop(
            make_config(locations=(tmp_path / "gone_a", tmp_path / "gone_b")),
            clock=clock,
        )
        report = loop.tick()

        assert report.outcome == OUTCOME_FAILED
        assert loop.tracker.last_signature is None
        # retried on the next timer tick even though nothing changed
        clock.now = START + timedelta(hours=1)
        assert loop.tick().outcome == OUTCOME_FAILED

    def test_failed_location_retried_next_cycle(self, make_config, clock, tmp_path,
                                                watch_dir, location_a):
        flaky = tmp_path / "flaky"
        loop = SchedulerLoop(make_config(locations=(location_a, flaky)), clock=clock)

        first = loop.tick()
        assert first.failed_locations == [flaky]
        assert loop.retry_locations == (flaky,)

        # drive comes back; the watch folder is untouched
        flaky.mkdir()
        clock.now = START + timedelta(hours=1)
        report = loop.tick()

        assert report.outcome == OUTCOME_WRITTEN
        assert [r.location for r in report.write_results] == [flaky]
        assert read_tree(flaky / "2024-03-15" / "11") == read_tree(watch_dir)
        assert read_tree(flaky / "monthly" / "2024-03") == read_tree(watch_dir)
        assert not (location_a / "2024-03-15" / "11").exists()
        assert len(report.prune_results) == 2
        assert loop.retry_locations == ()
        assert loop.tracker.last_backup_at == START

        clock.now = START + timedelta(hours=2)
        assert loop.tick().outcome == OUTCOME_UNCHANGED

    def test_location_still_failing_stays_queued(self, make_config, clock, tmp_path,
                                                 location_a):
        flaky = tmp_path / "flaky"
        loop = SchedulerLoop(make_config(locations=(location_a, flaky)), clock=clock)
        loop.tick()

        clock.now = START + timedelta(hours=1)
        report = loop.tick()

        assert report.outcome == OUTCOME_FAILED
        assert report.failed_locations == [flaky]
        assert loop.retry_locations == (flaky,)
        assert not (location_a / "2024-03-15" / "11").exists()

    def test_writer_exception_contained(self, make_config, clock):
        loop = SchedulerLoop(make_config(), writer=ExplodingWriter(), clock=clock)
        report = loop.tick()

        assert report.outcome == OUTCOME_FAILED
        assert all("on fire" in str(r.error) for r in report.write_results)
        assert loop.state == STATE_IDLE

    def test_parallel_writes(self, make_config, clock, watch_dir, location_a, location_b):
        loop = SchedulerLoop(make_config(parallel_writes=True), clock=clock)
        report = loop.tick()

        assert report.outcome == OUTCOME_WRITTEN
        assert [r.location for r in report.write_results] == [location_a, location_b]
        for loc in (location_a, location_b):
            assert read_tree(loc / "2024-03-15" / "10") == read_tree(watch_dir)


# ---------------------------------------------------------------------------
# Pruning
# ---------------------------------------------------------------------------

class TestPruning:
    def test_prunes_even_when_writes_fail(self, make_config, clock, location_a):
        old = location_a / "2024-01-01"
        (old / "09").mkdir(parents=True)
        keep = location_a / "monthly" / "2024-01"
        keep.mkdir(parents=True)
        loop = SchedulerLoop(make_config(locations=(location_a,)),
                             writer=ExplodingWriter(), clock=clock)

        loop.tick()

        assert not old.exists()
        assert keep.exists()

    def test_pruner_exception_contained(self, make_config, clock):
        loop = SchedulerLoop(make_config(), pruner=ExplodingPruner(), clock=clock)
        report = loop.tick()

        assert report.outcome == OUTCOME_WRITTEN
        assert all(not r.ok for r in report.prune_results)
        assert "pruner bug" in report.prune_results[0].failures[0].reason

    def test_retention_boundary_through_loop(self, make_config, clock, location_a):
        clock.now = datetime(2024, 3, 15, 12)
        for day in (date(2024, 2, 13), date(2024, 2, 14)):
            (location_a / day.isoformat() / "09").mkdir(parents=True)
        loop = SchedulerLoop(make_config(locations=(location_a,)), clock=clock)

        loop.tick()

        assert not (location_a / "2024-02-13").exists()
        assert (location_a / "2024-02-14").exists()


# ---------------------------------------------------------------------------
# Change hints
# ---------------------------------------------------------------------------

class TestChangeHints:
    def test_change_hint_deferred_within_slot(self, loop, clock, watch_dir, location_a):
        loop.tick()
        (watch_dir / "notes.txt").write_text("edited twice in one hour")
        clock.now = START + timedelta(minutes=20)

        report = loop.tick(TRIGGER_CHANGE)

        assert report.outcome == OUTCOME_DEFERRED
        assert (location_a / "2024-03-15" / "10" / "notes.txt").read_text() == "first notes"

    def test_timer_picks_up_deferred_change(self, loop, clock, watch_dir, location_a):
        loop.tick()
        (watch_dir / "notes.txt").write_text("edited twice in one hour")
        clock.now = START + timedelta(minutes=20)
        loop.tick(TRIGGER_CHANGE)

        clock.now = START + timedelta(hours=1)
        assert loop.tick().outcome == OUTCOME_WRITTEN
        assert (location_a / "2024-03-15" / "11" / "notes.txt").read_text() == \
            "edited twice in one hour"

    def test_change_hint_in_new_slot_writes(self, loop, clock, watch_dir, location_a):
        loop.tick()
        (watch_dir / "notes.txt").write_text("next hour edit")
        clock.now = START + timedelta(hours=1, minutes=2)

        assert loop.tick(TRIGGER_CHANGE).outcome == OUTCOME_WRITTEN


# ---------------------------------------------------------------------------
# Run loop
# ---------------------------------------------------------------------------

class TestRunLoop:
    def test_stops_on_event(self, make_config, clock, location_a):
        loop = SchedulerLoop(make_config(poll_interval_seconds=0.05), clock=clock)
        stop = threading.Event()
        t = threading.Thread(target=loop.run, args=(stop,), daemon=True)
        t.start()

        assert wait_for(lambda: loop.cycles >= 3)
        stop.set()
        t.join(timeout=5)

        assert not t.is_alive()
        assert (location_a / "2024-03-15" / "10").is_dir()

    def test_change_hint_wakes_loop(self, make_config, clock, watch_dir, location_a):
        loop = SchedulerLoop(
            make_config(poll_interval_seconds=3600, change_settle_seconds=0),
            clock=clock,
        )
        stop = threading.Event()
        t = threading.Thread(target=loop.run, args=(stop,), daemon=True)
        t.start()
        try:
            assert wait_for(lambda: loop.tracker.last_backup_at is not None)
            (watch_dir / "notes.txt").write_text("hinted change")
            clock.now = START + timedelta(hours=1)
            loop.notify_change(str(watch_dir / "notes.txt"))

            assert wait_for(lambda: (location_a / "2024-03-15" / "11").is_dir())
            assert (location_a / "2024-03-15" / "11" / "notes.txt").read_text() == "hinted change"
        finally:
            stop.set()
            t.join(timeout=5)
        assert not t.is_alive()

"""The warden's control loop.

Each cycle runs::

    idle -> evaluating -> (writing -> pruning)? -> idle

A cycle starts when the hourly timer fires, or when a change hint from the
watcher has settled. A hint never causes more than one write attempt per
hour slot; further changes in the same hour wait for the next timer tick.

A location whose write failed is retried on every following cycle until it
succeeds, even when the watch folder has not changed since.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime

from backup_warden.config import WardenConfig
from backup_warden.errors import (
    ConfigInvalid,
    PartialCopyFailure,
    PruneFailure,
    WatchFolderUnavailable,
)
from backup_warden.monitor.change_tracker import ChangeTracker
from backup_warden.snapshot.naming import daily_path, hour_slot, month_path
from backup_warden.snapshot.pruner import PruneResult, RetentionPruner, retention_cutoff
from backup_warden.snapshot.writer import SnapshotWriter, WriteResult

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_EVALUATING = "evaluating"
STATE_WRITING = "writing"
STATE_PRUNING = "pruning"

TRIGGER_TIMER = "timer"
TRIGGER_CHANGE = "change"

OUTCOME_UNAVAILABLE = "unavailable"
OUTCOME_UNCHANGED = "unchanged"
OUTCOME_DEFERRED = "deferred"
OUTCOME_WRITTEN = "written"
OUTCOME_FAILED = "failed"

# Upper bound on how long the loop goes without checking for shutdown
WAIT_SLICE_SECONDS = 1.0


@dataclass
class CycleReport:
    """What one tick did."""
    timestamp: datetime
    trigger: str
    outcome: str = OUTCOME_UNCHANGED
    error: str | None = None
    write_results: list[WriteResult] = field(default_factory=list)
    prune_results: list[PruneResult] = field(default_factory=list)

    @property
    def succeeded_locations(self) -> list:
        return [r.location for r in self.write_results if r.success]

    @property
    def failed_locations(self) -> list:
        return [r.location for r in self.write_results if not r.success]


class SchedulerLoop:
    """Drives change detection, snapshot writes and pruning.

    One instance lives for the whole process and owns the remembered
    signature through its ChangeTracker.
    """

    def __init__(
        self,
        config: WardenConfig,
        tracker: ChangeTracker | None = None,
        writer: SnapshotWriter | None = None,
        pruner: RetentionPruner | None = None,
        clock=datetime.now,
    ):
        if not config.backup_locations:
            raise ConfigInvalid("No backup locations configured")
        self.config = config
        self.tracker = tracker or ChangeTracker(config.watch_folder)
        self.writer = writer or SnapshotWriter()
        self.pruner = pruner or RetentionPruner()
        self._clock = clock
        self.state = STATE_IDLE
        self._last_attempt_slot = None
        self._retry_locations = set()
        self._change_signal = threading.Event()
        self.cycles = 0

    @property
    def retry_locations(self) -> tuple:
        """Locations whose most recent write attempt failed."""
        return tuple(loc for loc in self.config.backup_locations
                     if loc in self._retry_locations)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def notify_change(self, path: str | None = None):
        """Hint that the watch folder changed. Safe from any thread."""
        if not self._change_signal.is_set():
            logger.debug("Change hint received (%s)", path)
        self._change_signal.set()

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    def tick(self, trigger: str = TRIGGER_TIMER) -> CycleReport:
        """Run one evaluate/write/prune cycle and return to idle."""
        now = self._clock()
        report = CycleReport(timestamp=now, trigger=trigger)
        self.cycles += 1
        try:
            self._run_cycle(now, report)
        finally:
            self.state = STATE_IDLE
        return report

    def _run_cycle(self, now: datetime, report: CycleReport):
        self.state = STATE_EVALUATING
        try:
            signature = self.tracker.current_signature()
        except WatchFolderUnavailable as exc:
            report.outcome = OUTCOME_UNAVAILABLE
            report.error = str(exc)
            logger.warning("%s; skipping this cycle", exc)
            return

        changed = self.tracker.has_changed(signature)
        if not changed and not self._retry_locations:
            report.outcome = OUTCOME_UNCHANGED
            logger.debug("No changes in %s since %s", self.config.watch_folder,
                         self.tracker.last_backup_at)
            return

        slot = hour_slot(now)
        if report.trigger == TRIGGER_CHANGE and self._last_attempt_slot == slot:
            report.outcome = OUTCOME_DEFERRED
            logger.debug("Backup for hour slot %s already attempted; "
                         "deferring to the next timer tick", slot)
            return

        if changed:
            targets = list(self.config.backup_locations)
        else:
            targets = [loc for loc in self.config.backup_locations
                       if loc in self._retry_locations]
            logger.info("Retrying %d location(s) that failed on an earlier cycle",
                        len(targets))

        self.state = STATE_WRITING
        self._last_attempt_slot = slot
        report.write_results = self._write_all(now, targets)
        for result in report.write_results:
            if result.success:
                self._retry_locations.discard(result.location)
            else:
                self._retry_locations.add(result.location)

        if report.succeeded_locations:
            if changed:
                self.tracker.record_backup(signature, now)
            report.outcome = OUTCOME_WRITTEN
        else:
            report.outcome = OUTCOME_FAILED

        self.state = STATE_PRUNING
        report.prune_results = self._prune_all(now)

        logger.info(
            "Backup cycle (%s): %d/%d location(s) written, %d daily folder(s) pruned",
            report.trigger, len(report.succeeded_locations), len(report.write_results),
            sum(len(r.deleted) for r in report.prune_results),
        )

    def _write_all(self, now: datetime, locations: list) -> list[WriteResult]:
        if self.config.parallel_writes and len(locations) > 1:
            with ThreadPoolExecutor(max_workers=len(locations),
                                    thread_name_prefix="snapshot-writer") as pool:
                futures = [pool.submit(self._write_one, loc, now) for loc in locations]
                return [f.result() for f in futures]
        return [self._write_one(loc, now) for loc in locations]

    def _write_one(self, location, now: datetime) -> WriteResult:
        try:
            return self.writer.write(self.config.watch_folder, location, now)
        except Exception as exc:
            logger.exception("Unexpected error writing snapshot to %s", location)
            return WriteResult(
                location=location,
                timestamp=now,
                daily_path=daily_path(now, location),
                month_path=month_path(now, location),
                success=False,
                error=PartialCopyFailure(location, "daily",
                                         [(str(self.config.watch_folder), str(location), str(exc))]),
            )

    def _prune_all(self, now: datetime) -> list[PruneResult]:
        results = []
        for location in self.config.backup_locations:
            try:
                results.append(self.pruner.prune(location, now, self.config.retention_days))
            except Exception as exc:
                logger.exception("Unexpected error pruning %s", location)
                results.append(PruneResult(
                    location=location,
                    cutoff=retention_cutoff(now, self.config.retention_days),
                    failures=[PruneFailure(location, str(exc))],
                ))
        return results

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self, stop_event: threading.Event):
        """Tick now, then on every timer deadline or settled change hint.

        Returns once ``stop_event`` is set.
        """
        logger.info("Backup warden started: %s -> %d location(s), keeping %d day(s)",
                    self.config.watch_folder, len(self.config.backup_locations),
                    self.config.retention_days)
        trigger = TRIGGER_TIMER
        next_timer = time.monotonic() + self.config.poll_interval_seconds
        while not stop_event.is_set():
            try:
                self.tick(trigger)
            except Exception:
                logger.exception("Backup cycle failed")
            trigger, next_timer = self._wait_for_trigger(stop_event, next_timer)
            if trigger is None:
                break
        logger.info("Backup warden stopped after %d cycle(s).", self.cycles)

    def _wait_for_trigger(self, stop_event: threading.Event, next_timer: float):
        """Block until the timer fires, a hint settles, or shutdown.

        Returns ``(trigger, next_timer)``; trigger is None on shutdown.
        """
        settle_until = None
        while not stop_event.is_set():
            now = time.monotonic()
            if now >= next_timer:
                return TRIGGER_TIMER, now + self.config.poll_interval_seconds

            if self._change_signal.is_set():
                self._change_signal.clear()
                settle_until = now + self.config.change_settle_seconds
            if settle_until is not None and now >= settle_until:
                return TRIGGER_CHANGE, next_timer

            deadline = next_timer if settle_until is None else min(next_timer, settle_until)
            stop_event.wait(timeout=max(0.0, min(WAIT_SLICE_SECONDS, deadline - now)))
        return None, next_timer
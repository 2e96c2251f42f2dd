"""Process-level wiring for one backup warden.

Usage:
    backup-warden
    backup-warden --config config/config.json --log-level DEBUG
"""

import argparse
import logging
import os
import signal
import threading

from backup_warden.config import DEFAULT_CONFIG, WardenConfig, load_config
from backup_warden.errors import ConfigInvalid
from backup_warden.monitor.change_tracker import ChangeTracker
from backup_warden.monitor.change_watcher import ChangeWatcher
from backup_warden.scheduler import SchedulerLoop
from backup_warden.snapshot.pruner import RetentionPruner
from backup_warden.snapshot.writer import SnapshotWriter

logger = logging.getLogger(__name__)

EXIT_CONFIG_INVALID = 2


class Warden:
    """Owns the scheduler and the optional change watcher."""

    def __init__(self, config: WardenConfig, stop_event: threading.Event | None = None):
        self.config = config
        self.stop_event = stop_event or threading.Event()
        self.scheduler = SchedulerLoop(
            config,
            tracker=ChangeTracker(config.watch_folder),
            writer=SnapshotWriter(stop_event=self.stop_event),
            pruner=RetentionPruner(),
        )
        self.watcher = None
        if config.watch_events:
            self.watcher = ChangeWatcher(
                config.watch_folder,
                on_change=self.scheduler.notify_change,
                use_polling=config.use_polling_observer,
            )

    def run(self):
        """Block until ``stop_event`` is set."""
        if self.watcher is not None:
            self.watcher.start()
        try:
            self.scheduler.run(self.stop_event)
        finally:
            if self.watcher is not None:
                self.watcher.stop()

    def stop(self):
        self.stop_event.set()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Backup Warden - hourly snapshots with daily retention",
    )
    parser.add_argument(
        "-c", "--config",
        default=str(DEFAULT_CONFIG),
        help="Path to config.json (default: config/config.json)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config)
        warden = Warden(config)
    except ConfigInvalid as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_INVALID

    def handle_signal(signum, frame):
        logger.info("Received signal %s, shutting down...", signum)
        warden.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    warden.run()
    return 0

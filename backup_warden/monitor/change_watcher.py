"""Change hints from the filesystem using watchdog.

The watcher only tells the scheduler that *something* happened under the
watch folder. The scheduler still decides on its own, from the tree
signature, whether a backup is needed.
"""

import logging
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

logger = logging.getLogger(__name__)

DEFAULT_POLLING_TIMEOUT = 60


class ChangeHintHandler(FileSystemEventHandler):
    """Forwards create/modify/delete/move events to a callback."""

    def __init__(self, on_change):
        super().__init__()
        self.on_change = on_change

    def _forward(self, event):
        try:
            self.on_change(event.src_path)
        except Exception:
            logger.exception("Error handling %s event for %s",
                             event.event_type, event.src_path)

    def on_created(self, event):
        self._forward(event)

    def on_modified(self, event):
        # Directory mtime bumps accompany every child event
        if event.is_directory:
            return
        self._forward(event)

    def on_deleted(self, event):
        self._forward(event)

    def on_moved(self, event):
        self._forward(event)


class ChangeWatcher:
    """Manages a watchdog observer over the watch folder."""

    def __init__(self, watch_folder, on_change, use_polling: bool = False,
                 polling_timeout: float = DEFAULT_POLLING_TIMEOUT):
        self.watch_folder = Path(watch_folder)
        self.handler = ChangeHintHandler(on_change)
        if use_polling:
            self.observer = PollingObserver(timeout=polling_timeout)
        else:
            self.observer = Observer()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> bool:
        """Start watching. Returns False if the observer could not start."""
        if self._running:
            return True
        if not self.watch_folder.is_dir():
            logger.warning("Watch folder does not exist, change hints disabled: %s",
                           self.watch_folder)
            return False
        try:
            self.observer.schedule(self.handler, str(self.watch_folder), recursive=True)
            self.observer.start()
        except OSError as exc:
            logger.warning("Could not start change watcher on %s (%s); "
                           "relying on the timer only", self.watch_folder, exc)
            return False
        self._running = True
        logger.info("Watching: %s (recursive=True, %s)", self.watch_folder,
                    type(self.observer).__name__)
        return True

    def stop(self):
        """Stop the observer thread. Safe to call more than once."""
        if self._running:
            self.observer.stop()
            self.observer.join()
            self._running = False
            logger.info("Change watcher stopped.")

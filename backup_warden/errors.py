"""Error taxonomy for the backup warden.

Per-cycle errors (WatchFolderUnavailable, PartialCopyFailure, PruneFailure)
are reported through result objects and logs and never end the loop.
ConfigInvalid is the only fatal condition and is raised before the loop
starts.
"""


class WardenError(Exception):
    """Base class for all backup warden errors."""


class ConfigInvalid(WardenError):
    """The configuration cannot drive a warden."""


class WatchFolderUnavailable(WardenError):
    """The watched folder is missing or unreadable."""

    def __init__(self, path, reason: str):
        super().__init__(f"Watch folder unavailable: {path} ({reason})")
        self.path = path
        self.reason = reason


class PartialCopyFailure(WardenError):
    """One or more entries could not be copied into a snapshot.

    ``failures`` is a list of ``(source, destination, reason)`` tuples as
    produced by ``shutil.copytree``. ``stage`` is ``"daily"`` or
    ``"monthly"``.
    """

    def __init__(self, location, stage: str, failures: list[tuple[str, str, str]]):
        self.location = location
        self.stage = stage
        self.failures = list(failures)
        first = self.failures[0] if self.failures else ("?", "?", "unknown error")
        super().__init__(
            f"{stage} copy to {location} failed for {len(self.failures)} "
            f"entr{'y' if len(self.failures) == 1 else 'ies'} "
            f"(first: {first[0]}: {first[2]})"
        )


class PruneFailure(WardenError):
    """A daily snapshot folder could not be deleted."""

    def __init__(self, path, reason: str):
        super().__init__(f"Could not prune {path}: {reason}")
        self.path = path
        self.reason = reason

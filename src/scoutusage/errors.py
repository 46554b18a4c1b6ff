"""
Error taxonomy for usage collection.

Only list-level failures stop a poll. Per-unit failures (FetchError and its
subclasses) are captured inside the Snapshot as data.
"""

from __future__ import annotations

from typing import Optional


class ScoutUsageError(Exception):
    """Base class for everything this package raises on purpose."""


class BackendUnavailable(ScoutUsageError):
    """The backend could not be reached or refused the call."""

    def __init__(self, backend: str, call: str, cause: Optional[BaseException] = None):
        self.backend = backend
        self.call = call
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{backend} unavailable during {call}{detail}")


class FetchError(ScoutUsageError):
    """A single unit's sample could not be read."""

    def __init__(self, unit_id: str, reason: str = ""):
        self.unit_id = unit_id
        self.reason = reason
        super().__init__(f"{unit_id}: {reason}" if reason else unit_id)


class SampleUnavailable(FetchError):
    """Metrics are not (yet) published for this unit."""


class UnitVanished(FetchError):
    """The unit disappeared between listing and fetching."""


class CollectionCancelled(ScoutUsageError):
    """A collect() was cancelled while fetches were still outstanding."""


class WatchAborted(ScoutUsageError):
    """The watch loop hit its consecutive-failure threshold."""

    def __init__(self, failures: int, last_error: BackendUnavailable):
        self.failures = failures
        self.last_error = last_error
        super().__init__(
            f"giving up after {failures} consecutive failures; "
            f"last failed call was {last_error.call} on {last_error.backend}: {last_error}"
        )

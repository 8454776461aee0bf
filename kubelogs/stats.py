"""Thread-safe ingestion counters and periodic reporting."""

import logging
import threading

from kubelogs.scope import CancelScope

logger = logging.getLogger(__name__)

_FIELDS = (
    "records",
    "streams_started",
    "streams_stopped",
    "stream_failures",
    "subscription_failures",
)


class IngestStats:
    """Counters shared by the watcher, its subscriptions and every streamer."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counts = dict.fromkeys(_FIELDS, 0)

    def _add(self, name: str, amount: int = 1):
        with self._lock:
            self._counts[name] += amount

    def record_line(self):
        self._add("records")

    def record_stream_started(self):
        self._add("streams_started")

    def record_stream_stopped(self):
        self._add("streams_stopped")

    def record_stream_failure(self):
        self._add("stream_failures")

    def record_subscription_failure(self):
        self._add("subscription_failures")

    def snapshot(self) -> dict:
        with self._lock:
            return dict(self._counts)


class StatsReporter:
    """Logs the cumulative counters every *interval* seconds until cancelled."""

    def __init__(self, stats: IngestStats, interval: float, scope: CancelScope,
                 active_streams=None):
        self._stats = stats
        self._interval = interval
        self._scope = scope
        self._active_streams = active_streams

    def run(self):
        while not self._scope.wait(self._interval):
            self.report()

    def report(self) -> dict:
        snapshot = self._stats.snapshot()
        active = self._active_streams() if self._active_streams else 0
        logger.info(
            "[stats] records=%d active_streams=%d started=%d stopped=%d "
            "stream_failures=%d subscription_failures=%d",
            snapshot["records"], active, snapshot["streams_started"],
            snapshot["streams_stopped"], snapshot["stream_failures"],
            snapshot["subscription_failures"],
        )
        return snapshot

"""Per-namespace pod subscription: list, watch, and periodic resync.

``PodSubscription.events()`` turns the API server's list+watch protocol into
a plain iterator of ``PodEvent`` values. It keeps a local cache of the pods it
has seen so that a watch ``ADDED`` for a known pod becomes an update, and so
that a relist (every ``resync_interval`` seconds, after a 410, or after a
failure) can emit deletes for pods that vanished while the watch was down.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator

from kubelogs.errors import ClusterRequestFailure, SubscriptionFailure, WatchExpired
from kubelogs.models import EventType, PodEvent, PodSnapshot, WatchEvent
from kubelogs.scope import CancelScope

logger = logging.getLogger(__name__)

DEFAULT_RESYNC_INTERVAL = 60.0
DEFAULT_RETRY_INTERVAL = 5.0


class PodSubscription:
    def __init__(self, client, namespace: str, scope: CancelScope,
                 resync_interval: float = DEFAULT_RESYNC_INTERVAL,
                 retry_interval: float = DEFAULT_RETRY_INTERVAL,
                 stats=None):
        self._client = client
        self._namespace = namespace
        self._scope = scope
        self._resync_interval = resync_interval
        self._retry_interval = retry_interval
        self._stats = stats
        self._cache: dict[str, PodSnapshot] = {}
        self.synced = threading.Event()
        self.last_error: SubscriptionFailure | None = None

    @property
    def namespace(self) -> str:
        return self._namespace

    def __len__(self) -> int:
        return len(self._cache)

    def events(self) -> Iterator[PodEvent]:
        """Yield pod events until the subscription's scope is cancelled."""
        label = self._namespace or "<all>"
        while not self._scope.cancelled:
            try:
                pod_list = self._client.list_pods(self._namespace)
            except ClusterRequestFailure as exc:
                self._record_failure(exc)
                if self._scope.wait(self._retry_interval):
                    return
                continue

            yield from self._replace(pod_list.pods)
            if not self.synced.is_set():
                logger.info("Synced %d pod(s) in namespace %s", len(self._cache), label)
                self.synced.set()
            self.last_error = None

            try:
                yield from self._watch(pod_list.resource_version)
            except WatchExpired:
                logger.debug("Watch for namespace %s expired, relisting", label)
            except ClusterRequestFailure as exc:
                self._record_failure(exc)
                if self._scope.wait(self._retry_interval):
                    return

    def _watch(self, resource_version: str) -> Iterator[PodEvent]:
        deadline = time.monotonic() + self._resync_interval
        while not self._scope.cancelled:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            stream = self._client.watch_pods(
                self._namespace, resource_version, max(1, int(remaining)), self._scope,
            )
            try:
                for watch_event in stream:
                    if watch_event.resource_version:
                        resource_version = watch_event.resource_version
                    event = self._apply(watch_event)
                    if event is not None:
                        yield event
                    if self._scope.cancelled or time.monotonic() >= deadline:
                        return
            finally:
                stream.close()

    def _replace(self, pods: list[PodSnapshot]) -> Iterator[PodEvent]:
        """Swap in a fresh listing, emitting add/update/delete against the old cache."""
        fresh = {pod.key: pod for pod in pods}
        stale = [pod for key, pod in self._cache.items() if key not in fresh]
        previous = self._cache
        self._cache = fresh
        for pod in stale:
            yield PodEvent(EventType.DELETE, pod)
        for key, pod in fresh.items():
            kind = EventType.UPDATE if key in previous else EventType.ADD
            yield PodEvent(kind, pod)

    def _apply(self, watch_event: WatchEvent) -> PodEvent | None:
        pod = watch_event.pod
        if pod is None:
            return None
        if watch_event.type == "DELETED":
            self._cache.pop(pod.key, None)
            return PodEvent(EventType.DELETE, pod)
        if watch_event.type in ("ADDED", "MODIFIED"):
            known = pod.key in self._cache
            self._cache[pod.key] = pod
            return PodEvent(EventType.UPDATE if known else EventType.ADD, pod)
        logger.debug("Ignoring watch event %s for %s", watch_event.type, pod.key)
        return None

    def _record_failure(self, exc: ClusterRequestFailure):
        failure = SubscriptionFailure(self._namespace, exc)
        self.last_error = failure
        if self._stats is not None:
            self._stats.record_subscription_failure()
        logger.warning("%s; retrying in %.0fs", failure, self._retry_interval)

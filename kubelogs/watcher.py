"""PodWatcher: keeps exactly one streamer per eligible container.

Pod events from every namespace subscription go through ``dispatch``, which
applies the eligibility policy and starts or stops streamers against the
registry. The registry is the only state shared between subscription
threads; every check-then-insert and check-then-remove on it happens under
one lock, and the streamer's blocking I/O always runs outside it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from kubelogs.channel import RecordChannel
from kubelogs.errors import SubscriptionFailure
from kubelogs.models import (
    PHASE_RUNNING,
    PHASE_SUCCEEDED,
    EventType,
    PodEvent,
    PodSnapshot,
    WorkloadIdentity,
    stream_key,
)
from kubelogs.scope import CancelScope, TaskGroup
from kubelogs.selector import LabelSelector
from kubelogs.streamer import ContainerStreamer, StreamOutcome
from kubelogs.subscription import DEFAULT_RESYNC_INTERVAL, DEFAULT_RETRY_INTERVAL, PodSubscription

logger = logging.getLogger(__name__)

WATCHED_PHASES = frozenset({PHASE_RUNNING, PHASE_SUCCEEDED})
RUNNING_FIELD_SELECTOR = f"status.phase={PHASE_RUNNING}"


def should_watch(pod: PodSnapshot, selector: LabelSelector, pod_names: frozenset[str]) -> bool:
    """Selector match, then allow-list membership, then Running/Succeeded phase."""
    if not selector.matches(pod.labels):
        return False
    if pod_names and pod.key not in pod_names:
        return False
    # Pending pods have no log stream yet; Succeeded keeps job logs readable.
    return pod.phase in WATCHED_PHASES


@dataclass
class StreamEntry:
    key: str
    streamer: ContainerStreamer
    instance_id: str
    started_at: datetime


class PodWatcher:
    def __init__(
        self,
        client,
        namespaces: Iterable[str],
        selector: str,
        pod_names: Iterable[str] | None,
        output: RecordChannel,
        tail_lines: int | None = None,
        since_seconds: int | None = None,
        resync_interval: float = DEFAULT_RESYNC_INTERVAL,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        stats=None,
    ):
        self._selector = LabelSelector.parse(selector)
        self._client = client
        # An empty namespace means every namespace.
        self._namespaces = tuple(ns for ns in namespaces if ns) or ("",)
        self._pod_names = frozenset(pod_names or ())
        self._output = output
        self._tail_lines = tail_lines
        self._since_seconds = since_seconds
        self._resync_interval = resync_interval
        self._retry_interval = retry_interval
        self._stats = stats

        self._scope = CancelScope(name="pod-watcher")
        self._tasks = TaskGroup("pod-watcher")
        # Plain mutex for reads and writes alike; the stdlib has no RW lock.
        self._lock = threading.Lock()
        self._streams: dict[str, StreamEntry] = {}
        # key -> container instance whose log was read to the end
        self._finished: dict[str, str] = {}
        self._subscriptions: dict[str, PodSubscription] = {}

    @property
    def selector(self) -> LabelSelector:
        return self._selector

    @property
    def namespaces(self) -> tuple[str, ...]:
        return self._namespaces

    @property
    def scope(self) -> CancelScope:
        return self._scope

    def should_watch(self, pod: PodSnapshot) -> bool:
        return should_watch(pod, self._selector, self._pod_names)

    def start(self):
        """Start one subscription thread per namespace."""
        for namespace in self._namespaces:
            subscription = PodSubscription(
                self._client, namespace, self._scope.child(f"subscription:{namespace}"),
                resync_interval=self._resync_interval,
                retry_interval=self._retry_interval,
                stats=self._stats,
            )
            self._subscriptions[namespace] = subscription
            self._tasks.spawn(self._run_subscription, subscription,
                              name=f"subscription:{namespace or '*'}")

    def _run_subscription(self, subscription: PodSubscription):
        label = subscription.namespace or "<all>"
        try:
            for event in subscription.events():
                self.dispatch(event)
        except Exception:
            logger.exception("Error watching namespace %s", label)
        logger.debug("Subscription for namespace %s finished", label)

    def dispatch(self, event: PodEvent):
        if self._scope.cancelled:
            return
        pod = event.pod
        if event.type is EventType.DELETE:
            self.stop_pod_streams(pod)
            self._forget_finished(pod)
        elif self.should_watch(pod):
            self.start_pod_streams(pod)
        elif event.type is EventType.UPDATE:
            self.stop_pod_streams(pod)

    def start_pod_streams(self, pod: PodSnapshot):
        for container in pod.containers:
            self._start_stream(pod, container, "container")
        for container in pod.init_containers:
            if container in pod.running_init_containers:
                self._start_stream(pod, container, "init container")

    def _start_stream(self, pod: PodSnapshot, container: str, kind: str):
        key = stream_key(pod.namespace, pod.name, container)
        instance_id = pod.instance_id(container)
        with self._lock:
            if self._scope.cancelled or key in self._streams:
                return
            if instance_id and self._finished.get(key) == instance_id:
                return
            streamer = ContainerStreamer(
                self._client,
                WorkloadIdentity.for_container(pod, container),
                self._output,
                self._scope,
                tail_lines=self._tail_lines,
                since_seconds=self._since_seconds,
                on_exit=self._on_streamer_exit,
                stats=self._stats,
            )
            self._streams[key] = StreamEntry(key, streamer, instance_id, streamer.started_at)
            # Registered with the task group before stop() can pass its barrier.
            streamer.start(self._tasks)

        if self._stats is not None:
            self._stats.record_stream_started()
        logger.info("Started streaming logs from %s/%s %s %s",
                    pod.namespace, pod.name, kind, container)

    def stop_pod_streams(self, pod: PodSnapshot):
        stopped = []
        with self._lock:
            for container in pod.containers + pod.init_containers:
                entry = self._streams.pop(stream_key(pod.namespace, pod.name, container), None)
                if entry is not None:
                    entry.streamer.stop()
                    stopped.append(container)

        for container in stopped:
            if self._stats is not None:
                self._stats.record_stream_stopped()
            logger.info("Stopped streaming logs from %s/%s container %s",
                        pod.namespace, pod.name, container)

    def _forget_finished(self, pod: PodSnapshot):
        prefix = f"{pod.key}/"
        with self._lock:
            for key in [k for k in self._finished if k.startswith(prefix)]:
                del self._finished[key]

    def _on_streamer_exit(self, streamer: ContainerStreamer, outcome: StreamOutcome):
        """Drop the registry entry of a read loop that ended on its own."""
        with self._lock:
            entry = self._streams.get(streamer.key)
            if entry is None or entry.streamer is not streamer:
                return
            del self._streams[streamer.key]
            if outcome is StreamOutcome.EOF and entry.instance_id:
                self._finished[streamer.key] = entry.instance_id
        logger.debug("Stream %s exited (%s)", streamer.key, outcome.value)

    def stop(self):
        """Cancel every subscription and streamer, wait for their threads, clear the registry."""
        self._scope.cancel()
        # Barrier: a start already inside the lock has spawned its thread by now.
        with self._lock:
            pass
        self._tasks.join()
        with self._lock:
            self._streams.clear()
            self._finished.clear()

    def wait_until_synced(self, timeout: float | None = None) -> bool:
        """True once every subscription has completed its first listing."""
        return all(sub.synced.wait(timeout) for sub in list(self._subscriptions.values()))

    def active_streams(self) -> int:
        with self._lock:
            return len(self._streams)

    def stream_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._streams)

    def running_tasks(self) -> int:
        return len(self._tasks)

    def subscription_errors(self) -> dict[str, SubscriptionFailure]:
        return {
            ns: sub.last_error
            for ns, sub in self._subscriptions.items()
            if sub.last_error is not None
        }

    def list_eligible_pods(self, namespace: str = "") -> list[PodSnapshot]:
        """Point-in-time listing of Running pods matching the label selector."""
        return self._client.list_pods(
            namespace,
            label_selector=str(self._selector),
            field_selector=RUNNING_FIELD_SELECTOR,
        ).pods

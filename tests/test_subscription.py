"""Tests for the per-namespace list+watch subscription."""

import threading

from fakes import FakeClusterClient, make_pod, wait_for

from kubelogs.errors import ClusterRequestFailure, SubscriptionFailure, WatchExpired
from kubelogs.models import EventType
from kubelogs.scope import CancelScope
from kubelogs.stats import IngestStats
from kubelogs.subscription import PodSubscription


class Collector:
    """Runs a subscription on a thread and records (type, pod key) pairs."""

    def __init__(self, subscription):
        self.subscription = subscription
        self.events = []
        self._lock = threading.Lock()
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.start()

    def _run(self):
        for event in self.subscription.events():
            with self._lock:
                self.events.append((event.type, event.pod.key))

    def seen(self):
        with self._lock:
            return list(self.events)


class TestPodSubscription:
    def test_initial_list_emits_adds(self):
        client = FakeClusterClient()
        client.add_pod(make_pod("a"))
        client.add_pod(make_pod("b"))
        scope = CancelScope()
        sub = PodSubscription(client, "prod", scope)
        collector = Collector(sub)
        assert sub.synced.wait(3)
        assert collector.seen() == [(EventType.ADD, "prod/a"), (EventType.ADD, "prod/b")]
        assert len(sub) == 2
        scope.cancel()
        collector.thread.join(3)
        assert not collector.thread.is_alive()

    def test_watch_events(self):
        client = FakeClusterClient()
        client.add_pod(make_pod("a"))
        scope = CancelScope()
        sub = PodSubscription(client, "prod", scope)
        collector = Collector(sub)
        assert sub.synced.wait(3)

        client.emit("prod", "MODIFIED", make_pod("a", phase="Succeeded"))
        client.emit("prod", "ADDED", make_pod("c"))
        client.emit("prod", "DELETED", make_pod("a"))
        assert wait_for(lambda: len(collector.seen()) == 4)
        assert collector.seen()[1:] == [
            (EventType.UPDATE, "prod/a"),
            (EventType.ADD, "prod/c"),
            (EventType.DELETE, "prod/a"),
        ]
        scope.cancel()
        collector.thread.join(3)

    def test_resync_emits_delete_for_missed_pods(self):
        client = FakeClusterClient()
        client.add_pod(make_pod("a"))
        client.add_pod(make_pod("b"))
        scope = CancelScope()
        sub = PodSubscription(client, "prod", scope, resync_interval=0.1)
        collector = Collector(sub)
        assert sub.synced.wait(3)

        client.remove_pod(make_pod("b"))
        assert wait_for(lambda: (EventType.DELETE, "prod/b") in collector.seen(), timeout=5)
        assert (EventType.UPDATE, "prod/a") in collector.seen()
        scope.cancel()
        collector.thread.join(3)

    def test_list_failure_is_retried(self):
        client = FakeClusterClient()
        client.add_pod(make_pod("a"))
        client.list_failures.add("prod")
        stats = IngestStats()
        scope = CancelScope()
        sub = PodSubscription(client, "prod", scope, retry_interval=0.05, stats=stats)
        collector = Collector(sub)

        assert wait_for(lambda: sub.last_error is not None)
        assert isinstance(sub.last_error, SubscriptionFailure)
        assert sub.last_error.namespace == "prod"
        assert isinstance(sub.last_error.cause, ClusterRequestFailure)
        assert not sub.synced.is_set()

        client.list_failures.clear()
        assert sub.synced.wait(3)
        assert sub.last_error is None
        assert stats.snapshot()["subscription_failures"] >= 1
        assert collector.seen() == [(EventType.ADD, "prod/a")]
        scope.cancel()
        collector.thread.join(3)

    def test_expired_watch_relists(self):
        class ExpiringClient(FakeClusterClient):
            def __init__(self):
                super().__init__()
                self.watches = 0

            def watch_pods(self, namespace, resource_version, timeout_seconds, scope):
                self.watches += 1
                if self.watches == 1:
                    raise WatchExpired("too old resource version")
                return super().watch_pods(namespace, resource_version, timeout_seconds, scope)

        client = ExpiringClient()
        client.add_pod(make_pod("a"))
        scope = CancelScope()
        sub = PodSubscription(client, "prod", scope)
        collector = Collector(sub)
        assert wait_for(lambda: client.watches >= 2)
        assert collector.seen() == [(EventType.ADD, "prod/a"), (EventType.UPDATE, "prod/a")]
        assert sub.last_error is None
        scope.cancel()
        collector.thread.join(3)

    def test_cancel_during_retry_wait_ends_iteration(self):
        client = FakeClusterClient()
        client.list_failures.add("prod")
        scope = CancelScope()
        collector = Collector(PodSubscription(client, "prod", scope, retry_interval=60))
        assert wait_for(lambda: client.list_calls)
        scope.cancel()
        collector.thread.join(3)
        assert not collector.thread.is_alive()

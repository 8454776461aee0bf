"""Tests for the LogIngestionSource facade."""

import threading

import pytest
from fakes import FakeClusterClient, make_pod, wait_for

from kubelogs.config import Config
from kubelogs.errors import ClientBuildFailure, InvalidSelector
from kubelogs.source import LogIngestionSource, merge_selection


def _source(client, **config):
    config.setdefault("kubeconfig", "/nonexistent")
    return LogIngestionSource(Config(**config), client_factory=lambda cfg: client)


@pytest.fixture
def client():
    fake = FakeClusterClient(namespaces=("default", "prod", "staging"))
    fake.add_pod(make_pod("nginx-1", namespace="prod"))
    fake.add_pod(make_pod("redis-1", namespace="prod", labels={"app": "redis"}))
    fake.add_pod(make_pod("api-1", namespace="staging", labels={"app": "api"}))
    return fake


class TestMergeSelection:
    def test_keeps_previous_choice(self):
        assert merge_selection({"a": False, "gone": True}, {"a": True, "b": True}) == \
            {"a": False, "b": True}


class TestStartStop:
    def test_streams_records(self, client):
        client.stream_for("prod", "nginx-1", "web").push("hello from nginx")
        source = _source(client, namespaces=("prod",), selector="app=nginx")
        source.start()
        record = source.records.receive(timeout=3)
        assert record.body == "hello from nginx"
        assert record.attribute_map()["k8s.namespace"] == "prod"
        assert source.active_streams() == 1
        source.stop()
        assert source.active_streams() == 0
        assert source.records.closed

    def test_stop_is_idempotent(self, client):
        source = _source(client)
        source.start()
        source.stop()
        source.stop()
        assert source.watcher.running_tasks() == 0

    def test_second_start_rejected(self, client):
        source = _source(client, namespaces=("prod",), selector="app=nginx")
        source.start()
        first = source.watcher
        assert wait_for(lambda: client.open_count("prod/nginx-1/web") == 1)
        with pytest.raises(RuntimeError):
            source.start()
        assert source.watcher is first
        source.stop()
        assert first.scope.cancelled
        assert first.running_tasks() == 0
        assert client.open_count("prod/nginx-1/web") == 1

    def test_start_after_stop_rejected(self, client):
        source = _source(client)
        source.stop()
        with pytest.raises(RuntimeError):
            source.start()

    def test_records_iteration_ends_after_stop(self, client):
        client.stream_for("prod", "nginx-1", "web").push("one")
        source = _source(client, namespaces=("prod",), selector="app=nginx")
        source.start()
        assert wait_for(lambda: len(source.records) == 1)
        source.stop()
        assert [record.body for record in source.records] == ["one"]

    def test_client_build_failure_propagates(self):
        def factory(config):
            raise ClientBuildFailure("no kubeconfig")

        source = LogIngestionSource(Config(kubeconfig="/nonexistent"), client_factory=factory)
        with pytest.raises(ClientBuildFailure):
            source.start()
        source.stop()

    def test_stats_reporter_thread(self, client):
        source = _source(client, namespaces=("prod",), stats_interval=0.05)
        source.start()
        assert wait_for(lambda: source.stats.snapshot()["streams_started"] == 2)
        source.stop()


class TestReconfigure:
    def test_replaces_filter(self, client):
        source = _source(client, namespaces=("prod",), selector="app=nginx")
        source.start()
        assert wait_for(lambda: source.watcher.stream_keys() == ["prod/nginx-1/web"])
        old_watcher = source.watcher

        source.reconfigure(["staging"], "app=api")
        assert old_watcher.scope.cancelled
        assert old_watcher.active_streams() == 0
        assert source.config.namespaces == ("staging",)
        assert source.config.selector == "app=api"
        assert wait_for(lambda: source.watcher.stream_keys() == ["staging/api-1/web"])
        source.stop()

    def test_pod_allow_list(self, client):
        source = _source(client, namespaces=("prod",))
        source.start()
        assert wait_for(lambda: source.active_streams() == 2)
        source.reconfigure(["prod"], "", pod_names=["prod/redis-1"])
        assert wait_for(lambda: source.watcher.stream_keys() == ["prod/redis-1/web"])
        source.stop()

    def test_invalid_selector_keeps_running_watcher(self, client):
        source = _source(client, namespaces=("prod",), selector="app=nginx")
        source.start()
        watcher = source.watcher
        with pytest.raises(InvalidSelector):
            source.reconfigure(["prod"], "app in (")
        assert source.watcher is watcher
        assert not watcher.scope.cancelled
        source.stop()


class TestListing:
    def test_list_namespaces_defaults_to_initial_selection(self, client):
        source = _source(client, namespaces=("prod",))
        assert source.list_namespaces() == {"default": False, "prod": True, "staging": False}

    def test_list_namespaces_all_selected_without_filter(self, client):
        source = _source(client)
        assert source.list_namespaces() == {"default": True, "prod": True, "staging": True}

    def test_list_namespaces_preserves_choices(self, client):
        source = _source(client)
        source.list_namespaces()
        source.update_namespace_selection({"default": False})
        client.namespaces.append("dev")
        assert source.list_namespaces() == {"default": False, "prod": True, "staging": True, "dev": True}

    def test_list_pods_from_selected_namespaces(self, client):
        source = _source(client)
        pods = source.list_pods({"prod": True, "staging": False})
        assert pods == {"prod/nginx-1": True, "prod/redis-1": True}

    def test_list_pods_all_namespaces_when_none_selected(self, client):
        source = _source(client)
        assert set(source.list_pods([])) == {"prod/nginx-1", "prod/redis-1", "staging/api-1"}

    def test_list_pods_preserves_choices_and_skips_failures(self, client):
        source = _source(client)
        source.list_pods(["prod"])
        source.update_pod_selection({"prod/redis-1": False})
        client.list_failures.add("staging")
        assert source.list_pods(["prod", "staging"]) == {"prod/nginx-1": True, "prod/redis-1": False}

    def test_list_pods_single_namespace_string(self, client):
        source = _source(client)
        assert source.list_pods("staging") == {"staging/api-1": True}
        assert [call[0] for call in client.list_calls] == ["staging"]

    def test_concurrent_selection_updates(self, client):
        source = _source(client)
        source.list_pods(["prod"])
        errors = []

        def toggle(value):
            try:
                for _ in range(200):
                    source.update_pod_selection({"prod/redis-1": value})
                    source.list_pods(["prod"])
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=toggle, args=(n % 2 == 0,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)
        assert errors == []
        source.update_pod_selection({"prod/redis-1": False})
        assert source.list_pods(["prod"]) == {"prod/nginx-1": True, "prod/redis-1": False}

    def test_list_pods_applies_label_selector(self, client):
        source = _source(client, selector="app=nginx")
        assert source.list_pods(["prod"]) == {"prod/nginx-1": True}

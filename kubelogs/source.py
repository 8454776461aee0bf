"""LogIngestionSource: the public entry point for streaming Kubernetes logs.

Owns the bounded record channel, the current ``PodWatcher`` and the
listing queries used to populate namespace/pod pickers::

    source = LogIngestionSource(load_config(args, yaml_data))
    source.start()
    for record in source.records:
        print(record.to_json())
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping

from kubelogs.channel import RecordChannel
from kubelogs.cluster import ClusterClient, build_cluster_client
from kubelogs.config import Config
from kubelogs.enricher import OutputRecord
from kubelogs.errors import ClusterRequestFailure
from kubelogs.models import pod_key
from kubelogs.scope import CancelScope, TaskGroup
from kubelogs.selector import LabelSelector
from kubelogs.stats import IngestStats, StatsReporter
from kubelogs.watcher import PodWatcher

logger = logging.getLogger(__name__)


def merge_selection(previous: Mapping[str, bool], fresh: dict[str, bool]) -> dict[str, bool]:
    """Keep earlier choices for names still present; new names take the fresh default."""
    return {name: previous.get(name, default) for name, default in fresh.items()}


class LogIngestionSource:
    def __init__(self, config: Config | None = None,
                 client_factory: Callable[[Config], ClusterClient] = build_cluster_client):
        self._config = config or Config()
        self._initial_namespaces = frozenset(self._config.namespaces)
        self._client_factory = client_factory
        self._client = None
        self._output: RecordChannel[OutputRecord] = RecordChannel(self._config.buffer_size)
        self._watcher: PodWatcher | None = None
        self._scope = CancelScope(name="log-source")
        self._tasks = TaskGroup("log-source")
        self._lock = threading.Lock()
        self._stopped = False
        self._namespace_selection: dict[str, bool] = {}
        self._pod_selection: dict[str, bool] = {}
        self.stats = IngestStats()

    @property
    def config(self) -> Config:
        return self._config

    @property
    def records(self) -> RecordChannel[OutputRecord]:
        """Enriched records; iteration ends once the source is stopped."""
        return self._output

    def start(self):
        with self._lock:
            if self._stopped:
                raise RuntimeError("log source already stopped")
            if self._watcher is not None:
                raise RuntimeError("log source already started")
            self._client = self._client_factory(self._config)
            # No pod name filter initially.
            self._watcher = self._start_watcher(self._client, ())

            if self._config.stats_interval > 0:
                reporter = StatsReporter(self.stats, self._config.stats_interval,
                                         self._scope.child("stats"), self.active_streams)
                self._tasks.spawn(reporter.run, name="stats-reporter")

        logger.info("Started kubernetes log streaming")
        if self._config.namespaces:
            logger.info("  Namespaces: %s", ", ".join(self._config.namespaces))
        else:
            logger.info("  Namespaces: all")
        if self._config.selector:
            logger.info("  Label selector: %s", self._config.selector)

    def reconfigure(self, namespaces: Iterable[str], selector: str,
                    pod_names: Iterable[str] | None = None):
        """Replace the namespace, label selector and pod allow-list filter.

        The running watcher is fully stopped before its replacement starts,
        so no stream from the old filter survives the call.
        """
        LabelSelector.parse(selector)
        pod_names = tuple(pod_names or ())
        with self._lock:
            if self._stopped:
                raise RuntimeError("log source already stopped")
            if self._watcher is not None:
                self._watcher.stop()
                self._watcher = None

            self._config = self._config.with_filter(namespaces, selector)
            self._client = self._client_factory(self._config)
            self._watcher = self._start_watcher(self._client, pod_names)

        logger.info("Updated kubernetes filter - Namespaces: %s, Selector: %s, Pods: %d selected",
                    list(self._config.namespaces) or "all", selector, len(pod_names))

    def _start_watcher(self, client, pod_names) -> PodWatcher:
        watcher = PodWatcher(
            client,
            self._config.namespaces,
            self._config.selector,
            pod_names,
            self._output,
            tail_lines=self._config.tail,
            since_seconds=self._config.since,
            resync_interval=self._config.resync_interval,
            retry_interval=self._config.retry_interval,
            stats=self.stats,
        )
        watcher.start()
        return watcher

    def stop(self):
        """Stop every stream and close the record channel. Safe to call twice."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            self._scope.cancel()
            if self._watcher is not None:
                self._watcher.stop()
            self._tasks.join()
            self._output.close()
        logger.info("Stopped kubernetes log streaming")

    @property
    def watcher(self) -> PodWatcher | None:
        return self._watcher

    def active_streams(self) -> int:
        watcher = self._watcher
        return watcher.active_streams() if watcher is not None else 0

    def _listing_client(self):
        with self._lock:
            if self._client is None:
                self._client = self._client_factory(self._config)
            return self._client

    def list_namespaces(self) -> dict[str, bool]:
        """Namespaces in the cluster mapped to whether they are selected.

        Namespaces from the initial configuration start selected (all of
        them when none were configured); earlier choices are preserved.
        """
        names = self._listing_client().list_namespaces()
        select_all = not self._initial_namespaces
        fresh = {name: select_all or name in self._initial_namespaces for name in names}
        with self._lock:
            self._namespace_selection = merge_selection(self._namespace_selection, fresh)
            return dict(self._namespace_selection)

    def list_pods(self, selected_namespaces: Mapping[str, bool] | Iterable[str] | None = None) -> dict[str, bool]:
        """``namespace/pod`` names from the selected namespaces (all when none)."""
        if isinstance(selected_namespaces, str):
            selected_namespaces = (selected_namespaces,)
        if isinstance(selected_namespaces, Mapping):
            namespaces = [ns for ns, selected in selected_namespaces.items() if selected]
        else:
            namespaces = [ns for ns in selected_namespaces or () if ns]
        if not namespaces:
            namespaces = [""]

        client = self._listing_client()
        fresh: dict[str, bool] = {}
        for namespace in sorted(namespaces):
            try:
                pod_list = client.list_pods(namespace, label_selector=self._config.selector)
            except ClusterRequestFailure as exc:
                logger.warning("Failed to list pods in namespace %r: %s", namespace, exc)
                continue
            for pod in pod_list.pods:
                fresh[pod_key(pod.namespace, pod.name)] = True

        with self._lock:
            self._pod_selection = merge_selection(self._pod_selection, fresh)
            return dict(self._pod_selection)

    def update_namespace_selection(self, selection: Mapping[str, bool]):
        """Remember user toggles so the next ``list_namespaces`` keeps them."""
        with self._lock:
            self._namespace_selection.update(selection)

    def update_pod_selection(self, selection: Mapping[str, bool]):
        with self._lock:
            self._pod_selection.update(selection)

"""Thin adapter over the official ``kubernetes`` client.

Everything above this module works with ``PodSnapshot`` objects and
``LogStream`` handles, so the watcher and streamers can be exercised against
an in-memory fake.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator

import urllib3
from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.watch.watch import iter_resp_lines

from kubelogs.config import Config, default_kubeconfig
from kubelogs.errors import (
    ClientBuildFailure,
    ClusterRequestFailure,
    StreamOpenFailure,
    StreamReadFailure,
    WatchExpired,
)
from kubelogs.models import PodList, PodSnapshot, WatchEvent
from kubelogs.scope import CancelScope

logger = logging.getLogger(__name__)

HTTP_GONE = 410
CHUNK_SIZE = 64 * 1024


class LogStream:
    """Follow-mode log response; iterates raw byte chunks until the container stops."""

    def __init__(self, response: urllib3.HTTPResponse, description: str = ""):
        self._response = response
        self._description = description
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def __iter__(self) -> Iterator[bytes]:
        try:
            yield from self._response.stream(CHUNK_SIZE, decode_content=True)
        except (urllib3.exceptions.HTTPError, OSError, ValueError) as exc:
            raise StreamReadFailure(f"reading {self._description}: {exc}") from exc

    def close(self) -> None:
        """Close the response; safe to call from another thread and more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._response.close()
        self._response.release_conn()


class ClusterClient:
    def __init__(self, api_client: client.ApiClient):
        self._api = api_client
        self._core = client.CoreV1Api(api_client)

    def list_namespaces(self) -> list[str]:
        try:
            result = self._core.list_namespace()
        except (ApiException, urllib3.exceptions.HTTPError) as exc:
            raise ClusterRequestFailure(f"failed to list namespaces: {exc}") from exc
        return [ns.metadata.name for ns in result.items]

    def list_pods(self, namespace: str = "", label_selector: str = "",
                  field_selector: str = "") -> PodList:
        kwargs = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        if field_selector:
            kwargs["field_selector"] = field_selector
        try:
            if namespace:
                result = self._core.list_namespaced_pod(namespace, **kwargs)
            else:
                result = self._core.list_pod_for_all_namespaces(**kwargs)
        except (ApiException, urllib3.exceptions.HTTPError) as exc:
            raise ClusterRequestFailure(f"failed to list pods in {namespace or 'all namespaces'}: {exc}") from exc

        pods = [
            PodSnapshot.from_manifest(self._api.sanitize_for_serialization(item))
            for item in result.items
        ]
        return PodList(pods=pods, resource_version=result.metadata.resource_version or "")

    def watch_pods(self, namespace: str, resource_version: str, timeout_seconds: int,
                   scope: CancelScope) -> Iterator[WatchEvent]:
        """Yield pod watch events until the server ends the watch or *scope* is cancelled.

        Cancelling *scope* closes the response, which unblocks a pending read.
        An ``ERROR`` event with code 410 always raises ``WatchExpired``.
        """
        kwargs = {
            "watch": True,
            "allow_watch_bookmarks": True,
            "timeout_seconds": timeout_seconds,
            "_preload_content": False,
        }
        if resource_version:
            kwargs["resource_version"] = resource_version
        try:
            if namespace:
                response = self._core.list_namespaced_pod(namespace, **kwargs)
            else:
                response = self._core.list_pod_for_all_namespaces(**kwargs)
        except ApiException as exc:
            if exc.status == HTTP_GONE:
                raise WatchExpired(str(exc)) from exc
            raise ClusterRequestFailure(f"failed to watch pods: {exc}") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise ClusterRequestFailure(f"failed to watch pods: {exc}") from exc

        unregister = scope.on_cancel(response.close)
        try:
            for line in iter_resp_lines(response):
                if scope.cancelled:
                    return
                if not line:
                    continue
                event = json.loads(line)
                yield self._watch_event(event)
        except (urllib3.exceptions.HTTPError, OSError, ValueError) as exc:
            if scope.cancelled:
                return
            raise ClusterRequestFailure(f"pod watch interrupted: {exc}") from exc
        finally:
            unregister()
            response.close()
            response.release_conn()

    @staticmethod
    def _watch_event(event: dict) -> WatchEvent:
        kind = event.get("type", "")
        obj = event.get("object") or {}
        if kind == "ERROR":
            if obj.get("code") == HTTP_GONE:
                raise WatchExpired(obj.get("message", "resource version too old"))
            raise ClusterRequestFailure(f"watch error: {obj.get('message', obj)}")
        resource_version = (obj.get("metadata") or {}).get("resourceVersion", "")
        if kind == "BOOKMARK":
            return WatchEvent(kind, resource_version)
        return WatchEvent(kind, resource_version, PodSnapshot.from_manifest(obj))

    def open_log_stream(self, namespace: str, pod: str, container: str,
                        tail_lines: int | None = None,
                        since_seconds: int | None = None) -> LogStream:
        kwargs = {
            "container": container,
            "follow": True,
            "timestamps": True,
            "_preload_content": False,
        }
        if tail_lines is not None and tail_lines >= 0:
            kwargs["tail_lines"] = tail_lines
        if since_seconds is not None and since_seconds > 0:
            kwargs["since_seconds"] = since_seconds

        description = f"{namespace}/{pod} container {container}"
        try:
            response = self._core.read_namespaced_pod_log(pod, namespace, **kwargs)
        except (ApiException, urllib3.exceptions.HTTPError) as exc:
            raise StreamOpenFailure(f"opening log stream for {description}: {exc}") from exc
        return LogStream(response, description)


def build_cluster_client(config: Config) -> ClusterClient:
    """In-cluster credentials first, then the kubeconfig file (with optional context)."""
    configuration = client.Configuration()
    try:
        kube_config.load_incluster_config(client_configuration=configuration)
    except ConfigException:
        logger.debug("No in-cluster configuration, falling back to kubeconfig")
    else:
        logger.debug("Using in-cluster configuration")
        return ClusterClient(client.ApiClient(configuration))

    path = config.kubeconfig or default_kubeconfig()
    try:
        api_client = kube_config.new_client_from_config(
            config_file=path or None,
            context=config.context or None,
        )
    except (ConfigException, OSError, ValueError) as exc:
        raise ClientBuildFailure(f"failed to load kubeconfig {path or '<default>'}: {exc}") from exc
    logger.debug("Using kubeconfig %s (context %s)", path, config.context or "<current>")
    return ClusterClient(api_client)

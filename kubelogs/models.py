"""Pod snapshots, workload identities and the events passed between components."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

PHASE_PENDING = "Pending"
PHASE_RUNNING = "Running"
PHASE_SUCCEEDED = "Succeeded"
PHASE_FAILED = "Failed"
PHASE_UNKNOWN = "Unknown"


def pod_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def stream_key(namespace: str, pod: str, container: str) -> str:
    """Deduplication key for one container stream: ``namespace/pod/container``."""
    return f"{namespace}/{pod}/{container}"


def _instance_id(status: dict[str, Any]) -> str:
    container_id = status.get("containerID") or ""
    if container_id:
        return container_id
    return f"restart-{status.get('restartCount', 0)}"


@dataclass(frozen=True)
class PodSnapshot:
    """Immutable view of the parts of a pod manifest the watcher cares about."""

    namespace: str
    name: str
    uid: str = ""
    node_name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    phase: str = PHASE_PENDING
    containers: tuple[str, ...] = ()
    init_containers: tuple[str, ...] = ()
    running_init_containers: frozenset[str] = frozenset()
    container_ids: dict[str, str] = field(default_factory=dict)
    resource_version: str = ""

    @property
    def key(self) -> str:
        return pod_key(self.namespace, self.name)

    def instance_id(self, container: str) -> str:
        """Identifier of the current run of *container* (changes on restart)."""
        return self.container_ids.get(container, "")

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> PodSnapshot:
        """Build a snapshot from a camelCase pod manifest (API JSON form)."""
        metadata = manifest.get("metadata") or {}
        spec = manifest.get("spec") or {}
        status = manifest.get("status") or {}

        container_ids: dict[str, str] = {}
        running_init: set[str] = set()
        for entry in status.get("containerStatuses") or []:
            container_ids[entry["name"]] = _instance_id(entry)
        for entry in status.get("initContainerStatuses") or []:
            container_ids[entry["name"]] = _instance_id(entry)
            state = entry.get("state") or {}
            if state.get("running") is not None:
                running_init.add(entry["name"])

        return cls(
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name") or "",
            uid=metadata.get("uid") or "",
            node_name=spec.get("nodeName") or "",
            labels=dict(metadata.get("labels") or {}),
            phase=status.get("phase") or PHASE_UNKNOWN,
            containers=tuple(c["name"] for c in spec.get("containers") or []),
            init_containers=tuple(c["name"] for c in spec.get("initContainers") or []),
            running_init_containers=frozenset(running_init),
            container_ids=container_ids,
            resource_version=metadata.get("resourceVersion") or "",
        )


@dataclass(frozen=True)
class WorkloadIdentity:
    """Who a log line belongs to, captured once when its stream starts."""

    namespace: str
    pod: str
    container: str
    node: str = ""
    labels: tuple[tuple[str, str], ...] = ()

    @property
    def key(self) -> str:
        return stream_key(self.namespace, self.pod, self.container)

    @classmethod
    def for_container(cls, pod: PodSnapshot, container: str) -> WorkloadIdentity:
        return cls(
            namespace=pod.namespace,
            pod=pod.name,
            container=container,
            node=pod.node_name,
            labels=tuple(sorted(pod.labels.items())),
        )


class EventType(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class PodEvent:
    """A pod lifecycle notification delivered to the watcher's dispatch."""

    type: EventType
    pod: PodSnapshot


@dataclass(frozen=True)
class WatchEvent:
    """One raw event from the API server watch (ADDED, MODIFIED, DELETED, BOOKMARK)."""

    type: str
    resource_version: str
    pod: PodSnapshot | None = None


@dataclass(frozen=True)
class PodList:
    pods: list[PodSnapshot]
    resource_version: str = ""

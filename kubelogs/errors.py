"""Exception hierarchy for the log ingestion subsystem."""


class KubeLogsError(Exception):
    """Base class for every error raised by kubelogs."""


class InvalidSelector(KubeLogsError, ValueError):
    """Raised when a label selector expression cannot be parsed."""


class ClientBuildFailure(KubeLogsError):
    """Raised when no cluster client can be built from the configuration."""


class ClusterRequestFailure(KubeLogsError):
    """Raised when a list or watch request against the API server fails."""


class WatchExpired(ClusterRequestFailure):
    """The watch resource version is too old (HTTP 410); relist and rewatch."""


class SubscriptionFailure(KubeLogsError):
    """A namespace subscription could not list or watch pods."""

    def __init__(self, namespace: str, cause: Exception):
        label = namespace or "<all>"
        super().__init__(f"subscription for namespace {label} failed: {cause}")
        self.namespace = namespace
        self.cause = cause


class StreamOpenFailure(KubeLogsError):
    """Raised when a container log stream cannot be opened."""


class StreamReadFailure(KubeLogsError):
    """Raised when reading an open container log stream fails mid-way."""


class SerializationFailure(KubeLogsError):
    """Raised when an output record cannot be marshalled to JSON."""

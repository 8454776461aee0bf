"""Configuration loading from defaults, an optional YAML file, env vars and CLI args."""

import logging
import os
from dataclasses import dataclass, field, replace

import yaml

logger = logging.getLogger(__name__)


def default_kubeconfig() -> str:
    """``$KUBECONFIG`` if set, else ``~/.kube/config`` (empty if no home dir)."""
    env_path = os.environ.get("KUBECONFIG", "")
    if env_path:
        return env_path
    home = os.path.expanduser("~")
    if not home or home == "~":
        return ""
    return os.path.join(home, ".kube", "config")


def _parse_namespaces(value) -> tuple[str, ...]:
    """Accept a comma separated string or a list; blank entries mean "all"."""
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    return tuple(str(item).strip() for item in items if str(item).strip())


@dataclass(frozen=True)
class Config:
    kubeconfig: str = field(default_factory=default_kubeconfig)
    context: str = ""
    namespaces: tuple[str, ...] = ()
    selector: str = ""
    since_seconds: int = 0
    tail_lines: int = 10
    buffer_size: int = 1000
    resync_interval: float = 60.0
    retry_interval: float = 5.0
    stats_interval: float = 0.0

    @property
    def tail(self) -> int | None:
        """Tail length handed to the log request, or None for the whole log."""
        return self.tail_lines if self.tail_lines >= 0 else None

    @property
    def since(self) -> int | None:
        return self.since_seconds if self.since_seconds > 0 else None

    def with_filter(self, namespaces, selector: str) -> "Config":
        return replace(self, namespaces=_parse_namespaces(namespaces), selector=selector or "")


def load_yaml_config(path: str | None) -> dict:
    """Load settings from a YAML file. Returns an empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        logger.info("Loaded YAML config from %s", path)
        return data
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}


_CASTS = {
    "kubeconfig": str,
    "context": str,
    "namespaces": _parse_namespaces,
    "selector": str,
    "since_seconds": int,
    "tail_lines": int,
    "buffer_size": int,
    "resync_interval": float,
    "retry_interval": float,
    "stats_interval": float,
}

_ENV_VARS = {
    "kubeconfig": "KUBECONFIG",
    "context": "KUBE_CONTEXT",
    "namespaces": "KUBE_NAMESPACES",
    "selector": "KUBE_SELECTOR",
    "since_seconds": "SINCE_SECONDS",
    "tail_lines": "TAIL_LINES",
    "buffer_size": "BUFFER_SIZE",
    "resync_interval": "RESYNC_INTERVAL",
    "retry_interval": "RETRY_INTERVAL",
    "stats_interval": "STATS_INTERVAL",
}


def load_config(cli_args=None, yaml_data: dict | None = None) -> Config:
    """Build Config from defaults <- YAML <- env vars <- CLI args (highest priority).

    *cli_args* is an ``argparse.Namespace`` (or any object) whose attributes
    named like the Config fields override everything else when not None.
    """
    kwargs: dict = {}

    for key, value in (yaml_data or {}).items():
        if key not in _CASTS:
            logger.warning("Ignoring unknown config key %r", key)
            continue
        if value is not None:
            kwargs[key] = _CASTS[key](value)

    for key, env_var in _ENV_VARS.items():
        value = os.environ.get(env_var)
        if value:
            kwargs[key] = _CASTS[key](value)

    if cli_args is not None:
        for key, cast in _CASTS.items():
            value = getattr(cli_args, key, None)
            if value is not None:
                kwargs[key] = cast(value)

    if not kwargs.get("kubeconfig"):
        kwargs.pop("kubeconfig", None)

    config = Config(**kwargs)
    if config.buffer_size < 1:
        raise ValueError(f"buffer_size must be at least 1, got {config.buffer_size}")
    return config

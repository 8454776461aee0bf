#!/usr/bin/env python3
"""Kubernetes log source: prints enriched pod logs as NDJSON on stdout."""

import argparse
import json
import logging
import signal
import sys
import threading

from kubelogs.config import load_config, load_yaml_config
from kubelogs.errors import ClientBuildFailure, ClusterRequestFailure, InvalidSelector
from kubelogs.source import LogIngestionSource

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)
logging.getLogger("kubernetes").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stream Kubernetes pod logs as enriched NDJSON")
    parser.add_argument("--config", default=None, help="Path to YAML config file")
    parser.add_argument("--kubeconfig", default=None, help="Path to kubeconfig (default: $KUBECONFIG or ~/.kube/config)")
    parser.add_argument("--context", default=None, help="Kubeconfig context to use")
    parser.add_argument(
        "-n", "--namespace", dest="namespaces", action="append", default=None,
        help="Namespace to watch (repeatable; default: all namespaces)",
    )
    parser.add_argument("-l", "--selector", default=None, help="Label selector, e.g. app=web,tier!=cache")
    parser.add_argument("--since", dest="since_seconds", type=int, default=None,
                        help="Only return logs newer than this many seconds")
    parser.add_argument("--tail", dest="tail_lines", type=int, default=None,
                        help="Lines of history per container (-1 for all, default: 10)")
    parser.add_argument("--stats-interval", type=float, default=None,
                        help="Seconds between stats log lines (default: off)")
    listing = parser.add_mutually_exclusive_group()
    listing.add_argument("--list-namespaces", action="store_true", help="Print namespaces and exit")
    listing.add_argument("--list-pods", action="store_true", help="Print pods and exit")
    return parser


def _print_records(source: LogIngestionSource):
    for record in source.records:
        sys.stdout.write(record.to_json() + "\n")
        sys.stdout.flush()


def main(argv=None) -> int:
    args = build_cli_parser().parse_args(argv)
    config = load_config(args, load_yaml_config(args.config))
    source = LogIngestionSource(config)

    try:
        if args.list_namespaces:
            print(json.dumps(source.list_namespaces(), indent=2, sort_keys=True))
            return 0
        if args.list_pods:
            print(json.dumps(source.list_pods(config.namespaces), indent=2, sort_keys=True))
            return 0
        source.start()
    except (ClientBuildFailure, ClusterRequestFailure, InvalidSelector) as exc:
        logger.error("%s", exc)
        return 1

    shutdown = threading.Event()

    def signal_handler(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    printer = threading.Thread(target=_print_records, args=(source,), daemon=True)
    printer.start()

    while not shutdown.wait(1.0):
        pass

    source.stop()
    printer.join(timeout=5)
    logger.info("Stats: %s", source.stats.snapshot())
    return 0


if __name__ == "__main__":
    sys.exit(main())

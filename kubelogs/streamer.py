"""ContainerStreamer: follows one container's log and forwards enriched records."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from datetime import datetime, timezone
from enum import Enum

from kubelogs.channel import RecordChannel
from kubelogs.enricher import OutputRecord, enrich_line
from kubelogs.errors import StreamOpenFailure, StreamReadFailure
from kubelogs.models import WorkloadIdentity
from kubelogs.scope import CancelScope, TaskGroup

logger = logging.getLogger(__name__)

MAX_LINE_BYTES = 16 * 1024 * 1024


class StreamOutcome(str, Enum):
    CANCELLED = "cancelled"
    EOF = "eof"
    OPEN_FAILED = "open_failed"
    READ_FAILED = "read_failed"


def iter_lines(chunks: Iterable[bytes], max_line_bytes: int = MAX_LINE_BYTES) -> Iterator[str]:
    """Reassemble byte chunks into text lines.

    Lines are split on ``\\n``; a trailing ``\\r`` is dropped and invalid
    UTF-8 is replaced. Multi-megabyte lines come through whole. A line that
    grows past *max_line_bytes* without a newline is logged and dropped up
    to its terminating newline. A final unterminated line is yielded at end
    of stream.
    """
    pending = bytearray()
    discarding = False
    for chunk in chunks:
        if not chunk:
            continue
        pending.extend(chunk)
        start = 0
        while True:
            end = pending.find(b"\n", start)
            if end == -1:
                break
            if discarding:
                discarding = False
            else:
                yield _decode(pending[start:end])
            start = end + 1
        if start:
            del pending[:start]
        if len(pending) > max_line_bytes:
            if not discarding:
                logger.warning("Dropping log line longer than %d bytes", max_line_bytes)
                discarding = True
            pending.clear()
    if pending and not discarding:
        yield _decode(pending)


def _decode(raw: bytes | bytearray) -> str:
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    return raw.decode("utf-8", errors="replace")


class ContainerStreamer:
    def __init__(
        self,
        client,
        identity: WorkloadIdentity,
        output: RecordChannel[OutputRecord],
        parent_scope: CancelScope,
        tail_lines: int | None = None,
        since_seconds: int | None = None,
        on_exit: Callable[[ContainerStreamer, StreamOutcome], None] | None = None,
        stats=None,
    ):
        self._client = client
        self._identity = identity
        self._output = output
        self._scope = parent_scope.child(identity.key)
        self._tail_lines = tail_lines
        self._since_seconds = since_seconds
        self._on_exit = on_exit
        self._stats = stats
        self.started_at = datetime.now(timezone.utc)

    @property
    def identity(self) -> WorkloadIdentity:
        return self._identity

    @property
    def key(self) -> str:
        return self._identity.key

    @property
    def scope(self) -> CancelScope:
        return self._scope

    def start(self, tasks: TaskGroup):
        tasks.spawn(self.run, name=f"stream:{self.key}")

    def stop(self):
        """Cancel the read loop; does not wait for it to exit."""
        self._scope.cancel()

    def run(self) -> StreamOutcome:
        outcome = StreamOutcome.CANCELLED
        try:
            outcome = self._stream()
        finally:
            self._scope.cancel()
            if self._on_exit is not None:
                self._on_exit(self, outcome)
        return outcome

    def _stream(self) -> StreamOutcome:
        if self._scope.cancelled:
            return StreamOutcome.CANCELLED
        ident = self._identity

        try:
            stream = self._client.open_log_stream(
                ident.namespace, ident.pod, ident.container,
                tail_lines=self._tail_lines, since_seconds=self._since_seconds,
            )
        except StreamOpenFailure as exc:
            if self._scope.cancelled:
                return StreamOutcome.CANCELLED
            logger.warning("Error opening log stream for pod %s/%s container %s: %s",
                           ident.namespace, ident.pod, ident.container, exc)
            self._record_failure()
            return StreamOutcome.OPEN_FAILED

        unregister_close = self._scope.on_cancel(stream.close)
        unregister_wake = self._scope.on_cancel(self._output.wake)
        try:
            for line in iter_lines(stream):
                if self._scope.cancelled:
                    return StreamOutcome.CANCELLED
                if not line:
                    continue
                if not self._output.send(enrich_line(line, ident), self._scope):
                    return StreamOutcome.CANCELLED
                if self._stats is not None:
                    self._stats.record_line()
        except StreamReadFailure as exc:
            if self._scope.cancelled:
                return StreamOutcome.CANCELLED
            logger.warning("Error reading logs from pod %s/%s container %s: %s",
                           ident.namespace, ident.pod, ident.container, exc)
            self._record_failure()
            return StreamOutcome.READ_FAILED
        finally:
            unregister_close()
            unregister_wake()
            stream.close()

        if self._scope.cancelled:
            return StreamOutcome.CANCELLED
        logger.info("Log stream ended for %s/%s container %s",
                    ident.namespace, ident.pod, ident.container)
        return StreamOutcome.EOF

    def _record_failure(self):
        if self._stats is not None:
            self._stats.record_stream_failure()

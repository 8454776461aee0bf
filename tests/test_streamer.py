"""Tests for line reassembly and the container read loop."""

from fakes import FakeClusterClient, wait_for

from kubelogs.channel import RecordChannel
from kubelogs.models import WorkloadIdentity
from kubelogs.scope import CancelScope, TaskGroup
from kubelogs.stats import IngestStats
from kubelogs.streamer import ContainerStreamer, StreamOutcome, iter_lines

IDENTITY = WorkloadIdentity(namespace="prod", pod="nginx-1", container="web",
                            node="node-a", labels=(("app", "nginx"),))


def _streamer(client, output=None, scope=None, **kwargs):
    return ContainerStreamer(
        client, IDENTITY,
        output if output is not None else RecordChannel(100),
        scope if scope is not None else CancelScope(),
        **kwargs,
    )


class TestIterLines:
    def test_split_across_chunks(self):
        assert list(iter_lines([b"hel", b"lo\nwor", b"ld\n"])) == ["hello", "world"]

    def test_crlf_and_partial_final_line(self):
        assert list(iter_lines([b"a\r\nb"])) == ["a", "b"]

    def test_empty_lines_kept(self):
        assert list(iter_lines([b"a\n\nb\n"])) == ["a", "", "b"]

    def test_invalid_utf8_replaced(self):
        assert list(iter_lines([b"caf\xe9\n"])) == ["caf�"]

    def test_multibyte_split_across_chunks(self):
        data = "naïve\n".encode("utf-8")
        assert list(iter_lines([data[:3], data[3:]])) == ["naïve"]

    def test_very_long_line_not_truncated(self):
        big = b"x" * (2 * 1024 * 1024)
        chunks = [big[i:i + 65536] for i in range(0, len(big), 65536)] + [b"\n"]
        lines = list(iter_lines(chunks))
        assert len(lines) == 1
        assert len(lines[0]) == len(big)

    def test_runaway_line_dropped(self):
        chunks = [b"ok\n", b"x" * 20, b"x" * 20, b"tail\nnext\n"]
        assert list(iter_lines(chunks, max_line_bytes=8)) == ["ok", "next"]

    def test_runaway_line_at_end_of_stream_dropped(self):
        assert list(iter_lines([b"ok\n", b"x" * 20], max_line_bytes=8)) == ["ok"]

    def test_line_at_cap_kept(self):
        assert list(iter_lines([b"x" * 8, b"\n"], max_line_bytes=8)) == ["x" * 8]


class TestContainerStreamer:
    def test_streams_until_eof(self):
        client = FakeClusterClient()
        stream = client.stream_for("prod", "nginx-1", "web")
        stream.push("2024-01-15T10:30:45.123456789Z Starting server")
        stream.push("")
        stream.push("plain")
        stream.end()
        output = RecordChannel(10)
        stats = IngestStats()
        exits = []
        streamer = _streamer(client, output, on_exit=lambda s, o: exits.append(o), stats=stats)

        assert streamer.run() is StreamOutcome.EOF
        assert [output.receive(timeout=3).body, output.receive(timeout=3).body] == ["Starting server", "plain"]
        assert len(output) == 0
        assert exits == [StreamOutcome.EOF]
        assert stats.snapshot()["records"] == 2
        assert stream.closed
        assert streamer.scope.cancelled

    def test_open_failure(self):
        client = FakeClusterClient()
        client.open_failures.add(IDENTITY.key)
        stats = IngestStats()
        streamer = _streamer(client, stats=stats)
        assert streamer.run() is StreamOutcome.OPEN_FAILED
        assert stats.snapshot()["stream_failures"] == 1

    def test_read_failure(self):
        client = FakeClusterClient()
        stream = client.stream_for("prod", "nginx-1", "web")
        stream.push("one")
        stream.fail()
        output = RecordChannel(10)
        assert _streamer(client, output).run() is StreamOutcome.READ_FAILED
        assert output.receive(timeout=3).body == "one"
        assert stream.closed

    def test_cancel_before_start(self):
        client = FakeClusterClient()
        parent = CancelScope()
        streamer = _streamer(client, scope=parent)
        parent.cancel()
        assert streamer.run() is StreamOutcome.CANCELLED
        assert client.opened == []

    def test_stop_interrupts_blocked_read(self):
        client = FakeClusterClient()
        stream = client.stream_for("prod", "nginx-1", "web")
        tasks = TaskGroup()
        exits = []
        streamer = _streamer(client, on_exit=lambda s, o: exits.append(o))
        streamer.start(tasks)
        assert wait_for(lambda: client.opened)
        streamer.stop()
        assert tasks.join(timeout=3)
        assert exits == [StreamOutcome.CANCELLED]
        assert stream.closed

    def test_stop_interrupts_blocked_send(self):
        client = FakeClusterClient()
        stream = client.stream_for("prod", "nginx-1", "web")
        stream.push("first")
        stream.push("second")
        output = RecordChannel(1)
        tasks = TaskGroup()
        streamer = _streamer(client, output)
        streamer.start(tasks)
        assert wait_for(lambda: len(output) == 1)
        streamer.stop()
        assert tasks.join(timeout=3)
        assert output.receive(timeout=3).body == "first"
        assert len(output) == 0

    def test_records_carry_identity(self):
        client = FakeClusterClient()
        stream = client.stream_for("prod", "nginx-1", "web")
        stream.push("hello")
        stream.end()
        output = RecordChannel(10)
        _streamer(client, output).run()
        attrs = output.receive(timeout=3).attribute_map()
        assert attrs == {
            "k8s.namespace": "prod",
            "k8s.pod": "nginx-1",
            "k8s.container": "web",
            "k8s.node": "node-a",
            "k8s.label.app": "nginx",
        }

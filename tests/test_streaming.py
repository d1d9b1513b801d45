"""Tests for turning job polls into an ordered event stream."""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeEngineAPI, make_job, msg
from pipelink.errors import EngineError
from pipelink.models import JobStatus, LogLine, ProgressOnly, StreamError, Terminal
from pipelink.streaming import MessageStream, flatten_messages, stream_job_messages


async def collect(api: FakeEngineAPI, job_id: str = "job-1") -> list:
    stream = stream_job_messages(api, job_id, interval=0.0)
    return await asyncio.wait_for(stream.collect(), timeout=5)


def log_sequences(events: list) -> list[int]:
    return [e.sequence for e in events if isinstance(e, LogLine)]


class TestFlattenMessages:
    """Tests for depth-first flattening of the message tree."""

    def test_depth_first_original_order(self):
        """Nodes come out parent first, children in order, then siblings."""
        tree = [msg(0, "", msg(1, "", msg(2)), msg(3)), msg(4)]

        lines, last = flatten_messages(
            tree, first_sequence=0, status=JobStatus.RUNNING, progress=0.5
        )

        assert [line.text for line in lines] == ["m0", "m1", "m2", "m3", "m4"]
        assert [line.depth for line in lines] == [0, 1, 2, 1, 0]
        assert last == 4

    def test_order_is_tree_order_not_numeric(self):
        """A child with a lower sequence still follows its parent."""
        tree = [msg(5, "", msg(2)), msg(3)]

        lines, last = flatten_messages(
            tree, first_sequence=0, status=JobStatus.RUNNING, progress=0.0
        )

        assert [line.sequence for line in lines] == [5, 2, 3]
        assert last == 5

    def test_filters_below_cutoff_but_descends(self):
        """Old parents are skipped while their new children are kept."""
        tree = [msg(0, "", msg(1), msg(4)), msg(2)]

        lines, last = flatten_messages(
            tree, first_sequence=3, status=JobStatus.RUNNING, progress=0.0
        )

        assert [(line.sequence, line.depth) for line in lines] == [(4, 1)]
        assert last == 4

    def test_nothing_kept_returns_minus_one(self):
        """No qualifying node yields -1."""
        lines, last = flatten_messages(
            [msg(0), msg(1)], first_sequence=2, status=JobStatus.RUNNING, progress=0.0
        )

        assert lines == []
        assert last == -1

    def test_lines_carry_status_and_progress_snapshot(self):
        """Every line is tagged with the poll's status and progress."""
        lines, _ = flatten_messages(
            [msg(0, "hello", level="WARNING")],
            first_sequence=0,
            status=JobStatus.SUCCESS,
            progress=0.75,
        )

        assert lines[0].status == JobStatus.SUCCESS
        assert lines[0].progress == 0.75
        assert lines[0].level == "WARNING"
        assert lines[0].text == "hello"


class TestMessageStream:
    """Tests for the polling state machine."""

    @pytest.mark.asyncio
    async def test_single_poll_to_terminal(self):
        """Messages of a finished job are followed by one terminal event."""
        api = FakeEngineAPI(
            polls=[make_job(JobStatus.SUCCESS, msg(0, "", msg(1)), progress=1.0)]
        )

        events = await collect(api)

        assert [type(e) for e in events] == [LogLine, LogLine, Terminal]
        assert events[-1].status == JobStatus.SUCCESS
        assert api.job_calls == [("job-1", -1)]

    @pytest.mark.asyncio
    async def test_polls_after_last_delivered(self):
        """Each poll asks for messages after the highest delivered sequence."""
        api = FakeEngineAPI(
            polls=[
                make_job(JobStatus.RUNNING, msg(0), msg(1)),
                make_job(JobStatus.RUNNING, msg(0), msg(1), msg(2), msg(3)),
                make_job(JobStatus.SUCCESS, msg(0), msg(1), msg(2), msg(3)),
            ]
        )

        events = await collect(api)

        assert [since for _, since in api.job_calls] == [-1, 1, 3]
        assert log_sequences(events) == [0, 1, 2, 3]
        assert isinstance(events[-2], ProgressOnly)
        assert isinstance(events[-1], Terminal)

    @pytest.mark.asyncio
    async def test_heartbeat_when_nothing_new(self):
        """A poll without new messages emits a single progress event."""
        api = FakeEngineAPI(
            polls=[
                make_job(JobStatus.RUNNING, progress=0.25),
                make_job(JobStatus.RUNNING, progress=0.5),
                make_job(JobStatus.FAIL, progress=0.5),
            ]
        )

        events = await collect(api)

        assert events == [
            ProgressOnly(progress=0.25),
            ProgressOnly(progress=0.5),
            ProgressOnly(progress=0.5),
            Terminal(status=JobStatus.FAIL),
        ]

    @pytest.mark.asyncio
    async def test_new_child_of_old_parent_delivered(self):
        """Children with higher sequences than their parent are delivered."""
        api = FakeEngineAPI(
            polls=[
                make_job(JobStatus.RUNNING, msg(0)),
                make_job(JobStatus.SUCCESS, msg(0, "", msg(1, "child"))),
            ]
        )

        events = await collect(api)
        lines = [e for e in events if isinstance(e, LogLine)]

        assert [(line.text, line.depth) for line in lines] == [("m0", 0), ("child", 1)]

    @pytest.mark.asyncio
    async def test_lower_numbered_late_child_is_not_delivered(self):
        """A new message numbered below the delivered maximum is skipped."""
        api = FakeEngineAPI(
            polls=[
                make_job(JobStatus.RUNNING, msg(0), msg(5)),
                make_job(JobStatus.SUCCESS, msg(0, "", msg(3)), msg(5)),
            ]
        )

        events = await collect(api)

        assert log_sequences(events) == [0, 5]
        assert isinstance(events[-2], ProgressOnly)

    @pytest.mark.asyncio
    async def test_poll_failure_ends_with_stream_error(self):
        """A failed poll emits StreamError as the last event."""
        failure = EngineError("connection refused")
        api = FakeEngineAPI(polls=[make_job(JobStatus.RUNNING, msg(0)), failure])

        events = await collect(api)

        assert isinstance(events[0], LogLine)
        assert isinstance(events[-1], StreamError)
        assert events[-1].cause == "connection refused"
        assert events[-1].error is failure
        assert not any(isinstance(e, Terminal) for e in events)

    @pytest.mark.asyncio
    async def test_unexpected_failure_ends_with_stream_error(self):
        """An error outside the poll itself still ends with StreamError."""

        class GarbledAPI(FakeEngineAPI):
            async def job(self, job_id: str, since: int):
                self.job_calls.append((job_id, since))
                return None

        api = GarbledAPI()

        events = await collect(api)

        assert len(events) == 1
        assert isinstance(events[0], StreamError)
        assert isinstance(events[0].error, AttributeError)
        assert len(api.job_calls) == 1

    @pytest.mark.asyncio
    async def test_polling_waits_for_consumer(self):
        """The producer polls once, then waits until the event is taken."""
        api = FakeEngineAPI(polls=[make_job(JobStatus.RUNNING)])
        stream = stream_job_messages(api, "job-1", interval=0.0).start()

        await asyncio.sleep(0.05)
        polls_before_receive = len(api.job_calls)
        first = await asyncio.wait_for(stream.__anext__(), timeout=5)
        await asyncio.sleep(0.05)
        polls_after_receive = len(api.job_calls)
        await stream.aclose()

        assert polls_before_receive == 1
        assert isinstance(first, ProgressOnly)
        assert polls_after_receive == 2

    @pytest.mark.asyncio
    async def test_ordering_and_single_terminal(self):
        """Growing trees never repeat a sequence and end with one terminal."""
        snapshots = []
        tree = []
        for seq in range(0, 12, 3):
            tree = tree + [msg(seq, "", msg(seq + 1), msg(seq + 2))]
            snapshots.append(make_job(JobStatus.RUNNING, *tree))
        snapshots.append(make_job(JobStatus.ERROR, *tree))
        api = FakeEngineAPI(polls=snapshots)

        events = await collect(api)
        sequences = log_sequences(events)

        assert sequences == sorted(sequences)
        assert len(sequences) == len(set(sequences)) == 12
        finals = [e for e in events if isinstance(e, (Terminal, StreamError))]
        assert finals == [Terminal(status=JobStatus.ERROR)]
        assert events[-1] == finals[0]

    @pytest.mark.asyncio
    async def test_empty_stream(self):
        """A background stream is closed and yields nothing."""
        stream = MessageStream.empty()

        assert await stream.collect() == []
        assert not stream.is_running

    @pytest.mark.asyncio
    async def test_not_restartable(self):
        """Iterating a finished stream yields nothing more."""
        api = FakeEngineAPI(polls=[make_job(JobStatus.SUCCESS)])
        stream = stream_job_messages(api, "job-1", interval=0.0)

        first = await asyncio.wait_for(stream.collect(), timeout=5)
        second = await stream.collect()

        assert isinstance(first[-1], Terminal)
        assert second == []
        assert len(api.job_calls) == 1


class TestCancellation:
    """Tests for the cancellation token."""

    @pytest.mark.asyncio
    async def test_cancel_wakes_sleep_and_ends_without_terminal(self):
        """cancel() interrupts the wait between polls."""
        api = FakeEngineAPI(polls=[make_job(JobStatus.RUNNING)])
        stream = stream_job_messages(api, "job-1", interval=60.0)

        first = await asyncio.wait_for(stream.__anext__(), timeout=5)
        stream.cancel()
        rest = await asyncio.wait_for(stream.collect(), timeout=5)

        assert isinstance(first, ProgressOnly)
        assert rest == []
        assert len(api.job_calls) == 1

    @pytest.mark.asyncio
    async def test_aclose_stops_blocked_producer(self):
        """Closing while the producer waits on the consumer stops it."""
        api = FakeEngineAPI(
            polls=[make_job(JobStatus.RUNNING, *[msg(i) for i in range(10)])]
        )
        stream = stream_job_messages(api, "job-1", interval=60.0)

        first = await asyncio.wait_for(stream.__anext__(), timeout=5)
        await asyncio.wait_for(stream.aclose(), timeout=5)

        assert first.sequence == 0
        assert not stream.is_running
        assert await stream.collect() == []

    @pytest.mark.asyncio
    async def test_context_manager_closes(self):
        """Leaving the context cancels polling."""
        api = FakeEngineAPI(polls=[make_job(JobStatus.RUNNING)])

        async with stream_job_messages(api, "job-1", interval=60.0) as stream:
            event = await asyncio.wait_for(stream.__anext__(), timeout=5)

        assert isinstance(event, ProgressOnly)
        assert not stream.is_running

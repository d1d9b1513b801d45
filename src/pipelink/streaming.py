"""Job message streaming.

The engine only answers "give me the job with messages after sequence N".
MessageStream turns those polls into an ordered event sequence:

- LogLine for every new message, flattened depth-first in tree order
- ProgressOnly when a poll brought nothing new
- Terminal once the job reaches SUCCESS, ERROR or FAIL
- StreamError if a poll fails

Terminal or StreamError is always the last event, and at most one of them
is emitted. A producer task polls and hands each event to the consumer,
waiting until the consumer has taken it, so polling never runs ahead of
the caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, AsyncIterator, List, Sequence, Tuple

from pipelink.models import (
    Event,
    JobMessage,
    JobStatus,
    LogLine,
    ProgressOnly,
    StreamError,
    Terminal,
)

if TYPE_CHECKING:
    from pipelink.api import EngineAPI

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE_INTERVAL = 1.0

# Sentinel marking the end of the queue
_END = object()


def flatten_messages(
    messages: Sequence[JobMessage],
    *,
    first_sequence: int,
    status: JobStatus,
    progress: float,
    depth: int = 0,
) -> Tuple[List[LogLine], int]:
    """Flatten a message tree into log lines.

    Nodes are visited depth-first in their original order. A node is kept
    if its sequence is >= first_sequence; children are always visited since
    they may carry higher sequences than their parent.

    Returns:
        (log lines, highest sequence among kept nodes or -1)
    """
    lines: List[LogLine] = []
    last_seq = -1
    for msg in messages:
        if msg.sequence >= first_sequence:
            lines.append(
                LogLine(
                    text=msg.content,
                    level=msg.level,
                    depth=depth,
                    sequence=msg.sequence,
                    status=status,
                    progress=progress,
                )
            )
            last_seq = max(last_seq, msg.sequence)
        if msg.messages:
            child_lines, child_seq = flatten_messages(
                msg.messages,
                first_sequence=first_sequence,
                status=status,
                progress=progress,
                depth=depth + 1,
            )
            lines.extend(child_lines)
            last_seq = max(last_seq, child_seq)
    return lines, last_seq


class MessageStream:
    """Async iterator over one job's events.

    Use as:
        async with stream_job_messages(api, job_id) as stream:
            async for event in stream:
                ...

    Not restartable: once the final event has been consumed iteration stops.
    """

    def __init__(
        self,
        api: "EngineAPI | None",
        job_id: str | None,
        interval: float = DEFAULT_MESSAGE_INTERVAL,
    ):
        self._api = api
        self._job_id = job_id
        self._interval = interval
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=1)
        self._cancel = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._finished = api is None
        self.last_delivered = -1

    @classmethod
    def empty(cls) -> "MessageStream":
        """A closed stream with no events (background jobs)."""
        return cls(None, None)

    @property
    def job_id(self) -> str | None:
        return self._job_id

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "MessageStream":
        """Start the polling task. Called implicitly on first iteration."""
        if self._finished or self._task is not None:
            return self
        self._task = asyncio.create_task(
            self._run(), name=f"job-messages-{self._job_id}"
        )
        return self

    def cancel(self) -> None:
        """Stop polling. The stream ends without a terminal event."""
        self._cancel.set()

    async def aclose(self) -> None:
        """Cancel and wait for the polling task to finish."""
        self.cancel()
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._finished = True

    async def __aenter__(self) -> "MessageStream":
        return self.start()

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def __aiter__(self) -> AsyncIterator[Event]:
        return self

    async def __anext__(self) -> Event:
        if self._finished:
            raise StopAsyncIteration
        self.start()
        item = await self._queue.get()
        self._queue.task_done()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    async def collect(self) -> List[Event]:
        """Consume the whole stream."""
        return [event async for event in self]

    async def _send(self, item: object) -> bool:
        """Hand an item to the consumer. Returns False when cancelled."""
        if self._cancel.is_set():
            return False
        await self._queue.put(item)
        # Handoff: wait until the consumer has taken the event
        await self._queue.join()
        return not self._cancel.is_set()

    async def _run(self) -> None:
        ended = False
        try:
            try:
                await self._poll_loop()
            except Exception as e:
                logger.exception(f"Message stream for {self._job_id} failed")
                await self._send(StreamError(cause=str(e), error=e))
            if not self._cancel.is_set():
                await self._queue.put(_END)
                ended = True
        finally:
            if not ended:
                # Cancelled or crashed: drop undelivered events, then end
                self._drop_pending()
                self._queue.put_nowait(_END)

    def _drop_pending(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.task_done()

    async def _poll_loop(self) -> None:
        assert self._api is not None and self._job_id is not None
        while not self._cancel.is_set():
            # Polling
            try:
                job = await self._api.job(self._job_id, self.last_delivered)
            except Exception as e:
                logger.warning(f"Polling job {self._job_id} failed: {e}")
                await self._send(StreamError(cause=str(e), error=e))
                return

            # Delivering
            progress = job.messages.progress
            lines, max_seq = flatten_messages(
                job.messages.messages,
                first_sequence=self.last_delivered + 1,
                status=job.status,
                progress=progress,
            )
            for line in lines:
                if not await self._send(line):
                    return

            if max_seq > self.last_delivered:
                self.last_delivered = max_seq
            elif not await self._send(ProgressOnly(progress=progress)):
                return

            if job.status.is_terminal:
                logger.debug(f"Job {self._job_id} finished: {job.status.value}")
                await self._send(Terminal(status=job.status))
                return

            try:
                await asyncio.wait_for(self._cancel.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
        logger.debug(f"Message stream for {self._job_id} cancelled")


def stream_job_messages(
    api: "EngineAPI",
    job_id: str,
    *,
    interval: float = DEFAULT_MESSAGE_INTERVAL,
) -> MessageStream:
    """Create a stream of job events. Polling starts on first use."""
    return MessageStream(api, job_id, interval=interval)

# l2load/jobqueue.py
"""
Job queues shared between generators, the organizer and submission workers.

Queues live in redis under the BullMQ layout (`bull:<name>:*`), so the
organizer, which moves jobs from `mainQueue` to each `wallet_<id>`, reads and
writes the same jobs this package does. BullMQ keeps a job in its active list
while a worker holds it, retries failed jobs with exponential backoff and
promotes delayed jobs from inside the worker loop.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import bullmq

import l2load.constants as C

log = logging.getLogger("l2load.queue")

Processor = Callable[[Any], Awaitable[Any]]
JOB_STATES = ("wait", "active", "delayed", "completed", "failed")


def final_attempt(job: Any) -> bool:
    """True when a failure of the current run will not be retried."""
    return job.attemptsMade + 1 >= job.opts.get("attempts", 1)


class JobQueue(Protocol):
    name: str

    async def add(self, name: str, data: dict, *, attempts: int | None = None) -> Any: ...
    async def counts(self) -> dict[str, int]: ...
    async def consume(
        self,
        processor: Processor,
        stop: asyncio.Event,
        *,
        on_completed: Callable[[Any], None] | None = None,
        on_failed: Callable[[Any, BaseException], None] | None = None,
    ) -> None: ...
    async def close(self) -> None: ...


class BullQueue:
    """A named BullMQ queue plus the worker that drains it."""

    def __init__(
        self,
        name: str,
        connection: dict,
        *,
        prefix: str = "bull",
        attempts: int = 1,
        backoff: float = C.RETRY_BACKOFF,
    ) -> None:
        self.name = name
        self.connection = connection
        self.prefix = prefix
        self.attempts = attempts
        self.backoff = backoff
        self.queue = bullmq.Queue(name, {"connection": connection, "prefix": prefix})

    def job_options(self, attempts: int | None = None) -> dict:
        return {
            "attempts": attempts or self.attempts,
            "backoff": {"type": "exponential", "delay": int(self.backoff * 1000)},
            "removeOnComplete": C.KEEP_FINISHED,
            "removeOnFail": C.KEEP_FINISHED,
        }

    async def add(self, name: str, data: dict, *, attempts: int | None = None) -> bullmq.Job:
        return await self.queue.add(name, data, self.job_options(attempts))

    async def counts(self) -> dict[str, int]:
        counts = await self.queue.getJobCounts(*JOB_STATES)
        return {state: int(counts.get(state, 0)) for state in JOB_STATES}

    async def consume(
        self,
        processor: Processor,
        stop: asyncio.Event,
        *,
        on_completed: Callable[[Any], None] | None = None,
        on_failed: Callable[[Any, BaseException], None] | None = None,
    ) -> None:
        """Process jobs one at a time until `stop` is set.

        A processor exception fails that job only; BullMQ records the reason,
        schedules a retry when attempts are left and moves on.
        """

        async def process(job: bullmq.Job, token: str) -> None:
            try:
                await processor(job)
            except Exception as e:
                log.error("error on worker process for job %s: %s", job.id, e)
                raise

        worker = bullmq.Worker(
            self.name,
            process,
            {"connection": self.connection, "prefix": self.prefix, "concurrency": 1},
        )
        if on_completed:
            worker.on("completed", lambda job, *_: on_completed(job))
        if on_failed:
            worker.on("failed", lambda job, err, *_: on_failed(job, err))

        log.info("worker started as '%s'", self.name)
        try:
            await stop.wait()
        finally:
            await worker.close()
            log.info("worker '%s' stopped", self.name)

    async def close(self) -> None:
        await self.queue.close()

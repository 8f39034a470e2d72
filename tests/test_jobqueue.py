import asyncio
import os
import uuid

import pytest
import pytest_asyncio
import redis.asyncio as aioredis
import redis.exceptions

import l2load.constants as C
import l2load.jobqueue as jobqueue
from l2load.jobqueue import BullQueue, final_attempt
from conftest import FakeJob, wait_until


class RecordingQueue:
    def __init__(self, name, opts):
        self.name = name
        self.opts = opts
        self.added = []
        self.closed = False

    async def add(self, name, data, opts):
        self.added.append((name, data, opts))
        return FakeJob(id=str(len(self.added)), name=name, data=data, opts=opts)

    async def getJobCounts(self, *types):
        return {t: i for i, t in enumerate(types)}

    async def close(self):
        self.closed = True


class RecordingWorker:
    created = []

    def __init__(self, name, processor, opts):
        self.name = name
        self.processor = processor
        self.opts = opts
        self.handlers = {}
        self.closed = False
        RecordingWorker.created.append(self)

    def on(self, event, fn):
        self.handlers[event] = fn

    async def close(self):
        self.closed = True


@pytest.fixture
def recording(monkeypatch):
    RecordingWorker.created = []
    monkeypatch.setattr(jobqueue.bullmq, "Queue", RecordingQueue)
    monkeypatch.setattr(jobqueue.bullmq, "Worker", RecordingWorker)
    return RecordingWorker.created


def test_final_attempt():
    job = FakeJob(id="1", name="wallet_1", data={}, opts={"attempts": 3})
    assert not final_attempt(job)
    job.attemptsMade = 2
    assert final_attempt(job)
    assert final_attempt(FakeJob(id="2", name="wallet_1", data={}, opts={}))


def test_queue_uses_bullmq_layout(recording):
    q = BullQueue(C.MAIN_QUEUE, {"host": "redis", "port": 6379})
    assert q.queue.name == "mainQueue"
    assert q.queue.opts == {"connection": {"host": "redis", "port": 6379}, "prefix": "bull"}


@pytest.mark.asyncio
async def test_add_sets_retry_options(recording):
    q = BullQueue("mainQueue", {}, attempts=2, backoff=0.5)
    await q.add("wallet_3", {"tx": {}})
    await q.add("wallet_3", {"tx": {}}, attempts=5)

    (name, data, opts), (_, _, override) = q.queue.added
    assert (name, data) == ("wallet_3", {"tx": {}})
    assert opts == {
        "attempts": 2,
        "backoff": {"type": "exponential", "delay": 500},
        "removeOnComplete": C.KEEP_FINISHED,
        "removeOnFail": C.KEEP_FINISHED,
    }
    assert override["attempts"] == 5


@pytest.mark.asyncio
async def test_counts_cover_every_state(recording):
    q = BullQueue("wallet_1", {})
    assert await q.counts() == {"wait": 0, "active": 1, "delayed": 2, "completed": 3, "failed": 4}


@pytest.mark.asyncio
async def test_consume_runs_one_worker_until_stopped(recording):
    q = BullQueue("wallet_1", {"host": "redis"}, prefix="bull")
    seen, completed, failed = [], [], []

    async def process(job):
        seen.append(job.id)
        if job.data.get("bad"):
            raise RuntimeError("rejected")

    stop = asyncio.Event()
    task = asyncio.create_task(
        q.consume(process, stop, on_completed=completed.append, on_failed=lambda j, e: failed.append((j, e)))
    )
    await wait_until(lambda: len(recording) == 1)
    worker = recording[0]
    assert worker.name == "wallet_1"
    assert worker.opts == {"connection": {"host": "redis"}, "prefix": "bull", "concurrency": 1}

    good = FakeJob(id="1", name="wallet_1", data={}, opts={})
    bad = FakeJob(id="2", name="wallet_1", data={"bad": True}, opts={})
    await worker.processor(good, "token")
    with pytest.raises(RuntimeError):
        await worker.processor(bad, "token")
    worker.handlers["completed"](good, None)
    err = RuntimeError("rejected")
    worker.handlers["failed"](bad, err, "token")

    stop.set()
    await asyncio.wait_for(task, 1)
    assert seen == ["1", "2"]
    assert completed == [good]
    assert failed == [(bad, err)]
    assert worker.closed


@pytest.mark.asyncio
async def test_close(recording):
    q = BullQueue("wallet_1", {})
    await q.close()
    assert q.queue.closed


REDIS = {"host": os.getenv("REDIS_HOST", "localhost"), "port": int(os.getenv("REDIS_PORT", "6379"))}


@pytest_asyncio.fixture
async def redis_client():
    client = aioredis.Redis(**REDIS, decode_responses=True)
    try:
        await client.ping()
    except (redis.exceptions.ConnectionError, OSError):
        await client.aclose()
        pytest.skip("no redis server")
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def bull_queue(redis_client):
    name = f"wallet_test_{uuid.uuid4().hex[:8]}"
    q = BullQueue(name, REDIS, attempts=2, backoff=0.01)
    yield q
    await q.close()
    async for key in redis_client.scan_iter(f"bull:{name}:*"):
        await redis_client.delete(key)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_added_job_is_visible_to_other_bullmq_clients(bull_queue, redis_client):
    job = await bull_queue.add("wallet_9", {"tx": {"inflow": [{"salt": "1"}]}})

    assert job.id in await redis_client.lrange(f"bull:{bull_queue.name}:wait", 0, -1)
    assert await redis_client.hget(f"bull:{bull_queue.name}:{job.id}", "name") == "wallet_9"
    counts = await bull_queue.counts()
    assert counts["wait"] == 1
    assert counts["failed"] == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_failed_job_is_retried_after_backoff(bull_queue):
    runs = []
    completed = []

    async def process(job):
        runs.append(job.attemptsMade)
        if len(runs) == 1:
            raise RuntimeError("coordinator busy")

    await bull_queue.add("wallet_9", {"n": 1})
    stop = asyncio.Event()
    task = asyncio.create_task(bull_queue.consume(process, stop, on_completed=completed.append))
    await wait_until(lambda: len(completed) == 1, timeout=15)
    stop.set()
    await asyncio.wait_for(task, 15)

    assert len(runs) == 2
    counts = await bull_queue.counts()
    assert counts["completed"] == 1
    assert counts["failed"] == 0

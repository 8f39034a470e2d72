# tests/conftest.py
"""
Shared fakes for the test suite.

The fakes model just enough of the outside world:
- FakeWallet keeps an unspent set keyed by salt. A deposit with a salt
  creates a note, an accepted submission spends the inputs and creates the
  outputs, exactly like the node would once the tx is in a block.
- FakeOrganizer serves a settable queue depth and records registrations.
- MemoryQueue stands in for a BullQueue: same add/counts/consume surface,
  jobs shaped like bullmq.Job (attemptsMade, opts, failedReason).
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

import httpx
import pytest

import l2load.constants as C
from l2load.config import BlockTurnerSettings, GeneratorSettings
from l2load.generator import TransferGenerator
from l2load.models import GeneratedTx, Utxo


class FakeWallet:
    zk_address = "zk:test-wallet"
    eth_address = "0x00000000000000000000000000000000000000aa"

    def __init__(self) -> None:
        self.unspent: dict[int, Utxo] = {}
        self.deposits: list[tuple[int, int, str | None, int | None]] = []
        self.deposit_result = True
        self.deposit_error: Exception | None = None
        self.staged_merged: list[int] = [0]
        self.shielded: list[GeneratedTx] = []
        self.shield_error: Exception | None = None
        self.after_shield: Callable[[int], None] | None = None
        self.submit_status = 200
        self.submitted: list[object] = []
        self.rejected: list[object] = []

    async def deposit_ether(self, amount, fee, to=None, salt=None):
        if self.deposit_error is not None:
            raise self.deposit_error
        self.deposits.append((amount, fee, to, salt))
        if self.deposit_result and salt is not None:
            self.unspent[salt] = Utxo(salt=salt, value=amount)
        return self.deposit_result

    async def get_utxos(self, status=C.UtxoStatus.UNSPENT):
        return [self.unspent[s] for s in sorted(self.unspent)]

    async def shield_tx(self, tx):
        if self.shield_error is not None:
            raise self.shield_error
        self.shielded.append(tx)
        if self.after_shield:
            self.after_shield(len(self.shielded))
        return tx.to_dict()

    async def send_layer2_tx(self, zk_tx):
        if self.submit_status != 200:
            self.rejected.append(zk_tx)
            return httpx.Response(self.submit_status, text="nullifier already used")
        tx = GeneratedTx.from_dict(zk_tx)
        for u in tx.inflow:
            self.unspent.pop(u.salt, None)
        for u in tx.outflow:
            self.unspent[u.salt] = u
        self.submitted.append(zk_tx)
        return httpx.Response(200, text="ok")

    async def staged_deposit_merged(self):
        if len(self.staged_merged) > 1:
            return self.staged_merged.pop(0)
        return self.staged_merged[0]


class FakeOrganizer:
    def __init__(self) -> None:
        self.current_txs = 0
        self.nodes: list[dict] = []
        self.registrations: list[tuple] = []
        self.register_failures = 0
        self.depth_polls = 0

    async def registered_node_info(self):
        return list(self.nodes)

    async def register(self, wallet_id, address, wei_per_byte):
        if self.register_failures:
            self.register_failures -= 1
            raise httpx.ConnectError("organizer down")
        self.registrations.append((wallet_id, address, wei_per_byte))
        return {"id": len(self.registrations)}

    async def txs_in_queues(self):
        self.depth_polls += 1
        return self.current_txs


@dataclass
class FakeJob:
    id: str
    name: str
    data: dict
    opts: dict
    attemptsMade: int = 0
    failedReason: str | None = None


class MemoryQueue:
    """Single-process queue with BullQueue's surface. Retries are requeued at once."""

    def __init__(self, name: str, *, attempts: int = 1) -> None:
        self.name = name
        self.attempts = attempts
        self.wait: deque[FakeJob] = deque()
        self.completed: list[FakeJob] = []
        self.failed: list[FakeJob] = []
        self._ids = itertools.count(1)

    async def add(self, name, data, *, attempts=None):
        job = FakeJob(id=str(next(self._ids)), name=name, data=data, opts={"attempts": attempts or self.attempts})
        self.wait.append(job)
        return job

    async def counts(self):
        return {"wait": len(self.wait), "active": 0, "delayed": 0,
                "completed": len(self.completed), "failed": len(self.failed)}

    async def consume(self, processor, stop, *, on_completed=None, on_failed=None):
        while not stop.is_set():
            if not self.wait:
                await asyncio.sleep(0.005)
                continue
            job = self.wait.popleft()
            try:
                await processor(job)
            except Exception as e:
                job.attemptsMade += 1
                job.failedReason = str(e)
                if job.attemptsMade < job.opts["attempts"]:
                    self.wait.append(job)
                else:
                    self.failed.append(job)
                if on_failed:
                    on_failed(job, e)
                continue
            job.attemptsMade += 1
            self.completed.append(job)
            if on_completed:
                on_completed(job)

    async def close(self):
        pass


FAST = dict(
    activation_poll=0.01,
    queue_poll=0.01,
    utxo_backoff=0.01,
    retry_backoff=0.01,
)


@pytest.fixture
def settings() -> GeneratorSettings:
    return GeneratorSettings(
        **FAST,
        main_queue_limit=10,
        wei_per_byte=1,
        estimated_tx_bytes=10,
        deposit_amount=1_000_000,
        deposit_fee=5,
        initial_salt=1,
    )


@pytest.fixture
def turner_settings() -> BlockTurnerSettings:
    return BlockTurnerSettings(
        ready_poll=0.01,
        grace=0.0,
        block_time=0.1,
        blocks=2,
        fallback_amount=1,
        fallback_fee=100,
    )


@pytest.fixture
def wallet() -> FakeWallet:
    return FakeWallet()


@pytest.fixture
def organizer() -> FakeOrganizer:
    return FakeOrganizer()


@pytest.fixture
def queue() -> "MemoryQueue":
    # The organizer routes mainQueue -> wallet_<id>; tests collapse both into one queue
    return MemoryQueue(C.wallet_queue_name(7))


@pytest.fixture
def generator(wallet, organizer, queue, settings) -> TransferGenerator:
    return TransferGenerator(wallet, organizer, queue, queue, settings, wallet_id=7)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, step: float = 0.005) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(step)
    await asyncio.wait_for(_poll(), timeout=timeout)

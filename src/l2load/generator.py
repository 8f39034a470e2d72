import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

import l2load.constants as C
from l2load.allocator import SaltAllocator
from l2load.config import GeneratorSettings
from l2load.jobqueue import JobQueue, final_attempt
from l2load.models import GeneratorStats, ShieldedJob, Utxo
from l2load.node import DepositError, RPCError, WalletClient
from l2load.organizer import CoordinatorClient
from l2load.txn_builder import FeePolicy, build_transfer, describe

log = logging.getLogger("l2load.generator")

# Failures that mean "try again later" rather than "this wallet is broken"
TRANSIENT = (httpx.HTTPError, RPCError, OSError)


class SubmissionRejected(RuntimeError):
    """The coordinator answered a zkTx submission with a non-200 status."""

    def __init__(self, status_code: int, text: str):
        self.status_code = status_code
        super().__init__(f"zkTx rejected ({status_code}): {text}")


@dataclass
class ParticipantState:
    """Everything mutable about one simulated wallet. Never shared between wallets."""

    wallet_id: int | None
    stage: C.GeneratorStage = C.GeneratorStage.REGISTERING
    is_active: bool = False
    allocator: SaltAllocator = field(default_factory=SaltAllocator)
    stats: GeneratorStats = field(default_factory=GeneratorStats)

    @property
    def used_salts(self) -> set[int]:
        return self.allocator.used

    @property
    def stopped(self) -> bool:
        return self.stage == C.GeneratorStage.STOPPED


class TransferGenerator:
    """ETH self-transfer generator: one input, salt chain 1, 2, 4, 8, ...

    Lifecycle: deposit, wait for the deposit to be merged, register with the
    organizer, then generate until stopped. Generated jobs go to the shared
    main queue; this wallet's own worker consumes its private queue.
    """

    def __init__(
        self,
        wallet: WalletClient,
        organizer: CoordinatorClient,
        main_queue: JobQueue,
        wallet_queue: JobQueue,
        settings: GeneratorSettings,
        *,
        wallet_id: int | None = None,
        state: ParticipantState | None = None,
    ):
        self.wallet = wallet
        self.organizer = organizer
        self.main_queue = main_queue
        self.wallet_queue = wallet_queue
        self.settings = settings
        self.state = state or ParticipantState(wallet_id=wallet_id)
        self.policy = FeePolicy(fee_floor=settings.fee_floor, send_divisor=settings.send_divisor)

    @property
    def job_name(self) -> str:
        return C.wallet_queue_name(self.state.wallet_id)

    def stop(self) -> None:
        """Ask the generation loop to exit. Jobs already queued are left alone."""
        log.info("Stopping generator %s", self.state.wallet_id)
        self.state.is_active = False
        self.state.stage = C.GeneratorStage.STOPPED

    async def run(self, shutdown: asyncio.Event) -> None:
        if self.state.stopped:
            return
        await self.deposit()
        if not await self.await_activation():
            return

        async with asyncio.TaskGroup() as tg:
            tg.create_task(
                self.wallet_queue.consume(self.process_job, shutdown, on_completed=self._on_completed),
                name=f"worker_{self.state.wallet_id}",
            )
            await self.generate()
            log.info("Generation loop exited, worker keeps draining %s", self.wallet_queue.name)

    async def deposit(self) -> None:
        """Fund this wallet. Any failure here is fatal to the participant."""
        if not self.state.stopped:
            self.state.stage = C.GeneratorStage.DEPOSITING
        s = self.settings
        ok = await self.wallet.deposit_ether(
            s.deposit_amount,
            s.deposit_fee,
            to=self.wallet.zk_address,
            salt=s.initial_salt,
        )
        if not ok:
            raise DepositError("deposit transaction failed")
        log.info("deposit Tx sent")

    async def await_activation(self) -> bool:
        """Poll until the deposit is merged, then register. False if stopped first."""
        if not self.state.stopped:
            self.state.stage = C.GeneratorStage.AWAITING_ACTIVATION
        merged = False
        while not self.state.stopped:
            await asyncio.sleep(self.settings.activation_poll)
            if not merged:
                try:
                    staged = await self.wallet.staged_deposit_merged()
                except TRANSIENT as e:
                    log.warning("Could not read staged deposits: %s", e)
                    continue
                if staged != 0:
                    continue
                merged = True

            try:
                registered = await self.organizer.register(
                    self.state.wallet_id,
                    self.wallet.eth_address,
                    self.settings.wei_per_byte,
                )
            except TRANSIENT as e:
                log.error("Registration with organizer failed, retrying: %s", e)
                continue

            if self.state.stopped:
                log.info("stopped while registering, not activating")
                return False
            log.info("deposit Tx is processed. this wallet registered as %s to the organizer", registered)
            self.state.is_active = True
            self.state.stage = C.GeneratorStage.ACTIVE
            return True
        return False

    async def below_queue_limit(self) -> bool:
        try:
            current = await self.organizer.txs_in_queues()
        except TRANSIENT as e:
            log.warning("Could not read queue depth: %s", e)
            return False
        if current >= self.settings.main_queue_limit:
            self.state.stats.backpressure_waits += 1
            return False
        log.debug("current job count %s", current)
        return True

    async def generate(self) -> None:
        s = self.settings
        while self.state.is_active:
            if not await self.below_queue_limit():
                await asyncio.sleep(s.queue_poll)
                continue

            try:
                unspent = await self.wallet.get_utxos(C.UtxoStatus.UNSPENT)
            except TRANSIENT as e:
                log.warning("Could not fetch unspent notes: %s", e)
                await asyncio.sleep(s.utxo_backoff)
                continue

            if not unspent:
                log.debug("no spendable Utxo, wait until available")
                await asyncio.sleep(s.utxo_backoff)
                continue

            utxo = self.state.allocator.select_input(unspent)
            if utxo is None:
                log.debug("no available utxo for now wait %ss", s.utxo_backoff)
                await asyncio.sleep(s.utxo_backoff)
                continue

            if await self.generate_one(utxo) is None:
                await asyncio.sleep(s.utxo_backoff)

    async def generate_one(self, utxo: Utxo) -> Any:
        """Build, shield and enqueue one tx spending `utxo`.

        The salt is marked used only once shielding succeeded; a failure
        leaves it selectable for the next round.
        """
        try:
            tx = build_transfer(utxo, self.settings.wei_per_byte, self.wallet.zk_address, self.policy)
            log.debug("created zktx: %s", describe(tx))
            zk_tx = await self.wallet.shield_tx(tx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.state.stats.shield_failures += 1
            self.state.stats.last_error = str(e)
            log.error("error while shielding salt %s: %s", utxo.salt, e)
            return None

        self.state.allocator.mark_used(utxo.salt)
        try:
            job = await self.main_queue.add(self.job_name, ShieldedJob(tx=tx, zk_tx=zk_tx).to_dict())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Never reached the queue, so nothing will ever release it
            self.state.allocator.unlock([utxo.salt])
            self.state.stats.last_error = str(e)
            log.error("error while adding salt %s to %s: %s", utxo.salt, self.main_queue.name, e)
            return None
        self.state.stats.generated += 1
        return job

    async def process_job(self, job) -> None:
        """Worker side: submit one shielded tx, releasing its inputs on rejection."""
        shielded = ShieldedJob.from_dict(job.data)
        try:
            response = await self.wallet.send_layer2_tx(shielded.zk_tx)
        except httpx.HTTPError:
            # Outcome unknown; keep the inputs locked while a retry is still coming
            if final_attempt(job):
                self.state.allocator.unlock(shielded.input_salts)
            raise

        if response.status_code != 200:
            released = self.state.allocator.unlock(shielded.input_salts)
            self.state.stats.rejected += 1
            log.debug("released salts %s after rejection", released)
            raise SubmissionRejected(response.status_code, response.text)

        self.state.stats.submitted += 1
        log.info("zktx successfully sent")

    def _on_completed(self, job) -> None:
        salts = [u["salt"] for u in job.data["tx"]["inflow"]]
        log.info("job salt %s completed", ", ".join(salts))

    def snapshot(self) -> dict:
        st = self.state
        return {
            "id": st.wallet_id,
            "stage": st.stage.value,
            "is_active": st.is_active,
            "used_salts": len(st.used_salts),
            "stats": {
                "generated": st.stats.generated,
                "shield_failures": st.stats.shield_failures,
                "backpressure_waits": st.stats.backpressure_waits,
                "submitted": st.stats.submitted,
                "rejected": st.stats.rejected,
                "last_error": st.stats.last_error,
            },
        }

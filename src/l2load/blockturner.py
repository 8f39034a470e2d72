"""Block turner: keeps the layer-2 chain moving when no proposals arrive.

After every wallet has registered, a deadline of about 15 block periods is
armed. Each NewProposal event re-arms it from scratch. If it expires, a tiny
deposit with a generous fee is sent from the turner's own account so the
coordinator has something worth proposing, and the deadline is armed again.

One task owns the timer. Chain events and timer expiries both arrive as
messages on a single inbox, so a reset and an expiry can never act at once.
"""

import asyncio
import logging
from dataclasses import dataclass

import httpx

import l2load.constants as C
from l2load.config import BlockTurnerSettings, cfg
from l2load.models import ChainEvent
from l2load.node import DepositError, NodeClient, WalletClient
from l2load.organizer import CoordinatorClient, OrganizerClient
from l2load.ws import proposal_listener

log = logging.getLogger("l2load.blockturner")


@dataclass(frozen=True, slots=True)
class Expired:
    generation: int


class DeadlineTimer:
    """Posts `Expired(generation)` to `inbox` after `duration` seconds.

    `arm` cancels the pending expiry and bumps the generation, so an expiry
    that was already queued before the re-arm is recognisably stale.
    """

    def __init__(self, inbox: asyncio.Queue, duration: float):
        self._inbox = inbox
        self.duration = duration
        self.generation = 0
        self.deadline: float | None = None
        self._handle: asyncio.TimerHandle | None = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self) -> None:
        self.cancel()
        self.generation += 1
        loop = asyncio.get_running_loop()
        self.deadline = loop.time() + self.duration
        self._handle = loop.call_later(self.duration, self._expire, self.generation)

    def _expire(self, generation: int) -> None:
        self._handle = None
        self._inbox.put_nowait(Expired(generation))

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self.deadline = None

    def is_current(self, msg: Expired) -> bool:
        return msg.generation == self.generation


class BlockTurner:
    def __init__(
        self,
        wallet: WalletClient,
        organizer: CoordinatorClient,
        settings: BlockTurnerSettings,
    ):
        self.wallet = wallet
        self.organizer = organizer
        self.settings = settings
        self.inbox: asyncio.Queue[ChainEvent | Expired] = asyncio.Queue()
        self.timer = DeadlineTimer(self.inbox, settings.deadline)
        self.state = C.TurnerState.STARTING
        self.last_proposal_at = settings.from_block
        self.events_seen = 0
        self.fallbacks_sent = 0

    def all_deposited(self, wallets: list[dict]) -> bool:
        # A wallet reports its address only once its deposit went through
        if len(wallets) < self.settings.expected_wallets:
            return False
        return all(w.get("from", "") != "" for w in wallets)

    async def wait_for_wallets(self) -> None:
        """Block until every registered wallet has deposited, then wait out the grace period."""
        log.info("standby for all wallets are registered to organizer")
        ready = False
        while not ready:
            try:
                ready = self.all_deposited(await self.organizer.registered_node_info())
            except (httpx.HTTPError, ValueError) as e:
                log.error("error checking organizer ready : %s", e)
            await asyncio.sleep(self.settings.ready_poll)
        await asyncio.sleep(self.settings.grace)

    def notify(self, event: ChainEvent) -> None:
        self.inbox.put_nowait(event)

    async def watch(self) -> None:
        """Owner loop. Runs until cancelled or a fallback deposit fails."""
        self.timer.arm()
        self.state = C.TurnerState.ARMED
        try:
            while True:
                msg = await self.inbox.get()
                if isinstance(msg, ChainEvent):
                    self.on_proposal(msg)
                elif self.timer.is_current(msg):
                    self.state = C.TurnerState.FIRING
                    await self.fire()
                    self.timer.arm()
                    self.state = C.TurnerState.ARMED
        finally:
            self.timer.cancel()

    def on_proposal(self, event: ChainEvent) -> None:
        log.debug(
            "proposalnum(%s) - blockHash(%s)@blockNumber(%s)",
            event.proposal_num, event.block_hash, event.block_number,
        )
        self.events_seen += 1
        self.last_proposal_at = event.block_number
        self.timer.arm()

    async def fire(self) -> None:
        s = self.settings
        log.info("no proposal detected in about %s blocks, sending deposit tx", s.blocks)
        ok = await self.wallet.deposit_ether(s.fallback_amount, s.fallback_fee)
        if not ok:
            raise DepositError("Deposit Transaction Failed!")
        self.fallbacks_sent += 1


async def run_block_turner(conf: dict = cfg, settings: BlockTurnerSettings | None = None) -> None:
    settings = settings or BlockTurnerSettings.from_config(conf)
    node = conf["node"]
    organizer = OrganizerClient(conf["organizer"]["url"], timeout=conf["organizer"]["timeout"])
    # Account #0 coordinator, #1 slasher, #2 turner
    wallet = NodeClient(
        node["url"],
        node["coordinator_url"],
        account_index=settings.account_index,
        timeout=node["timeout"],
    )
    turner = BlockTurner(wallet, organizer, settings)

    try:
        await turner.wait_for_wallets()
        log.info("layer2 block turner initializing")
        await wallet.wait_until_ready()

        stop = asyncio.Event()
        async with asyncio.TaskGroup() as tg:
            tg.create_task(
                proposal_listener(
                    stop,
                    node["ws_url"],
                    node["contract"],
                    turner.inbox,
                    from_block=turner.last_proposal_at,
                    on_connected=lambda sub_id: log.info("additional proposal event watch Id : %s", sub_id),
                ),
                name="proposal_listener",
            )
            tg.create_task(turner.watch(), name="block_turner")
    finally:
        await organizer.aclose()
        await wallet.aclose()

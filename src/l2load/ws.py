# l2load/ws.py
"""
WebSocket listener that:
1. Maintains a persistent connection to the layer-1 node
2. Subscribes to NewProposal logs of the rollup contract
3. Replays proposals since the last seen block after every (re)connect
4. Publishes decoded ChainEvents to a queue for the block turner
"""
import asyncio
import json
import logging
from collections.abc import Callable

import websockets
from eth_utils import encode_hex, event_signature_to_log_topic

from l2load.models import ChainEvent

log = logging.getLogger("l2load.ws")

RECONNECT_BASE = 1.0
RECONNECT_MAX = 10.0

NEW_PROPOSAL_SIGNATURE = "NewProposal(uint256,bytes32)"
NEW_PROPOSAL_TOPIC = encode_hex(event_signature_to_log_topic(NEW_PROPOSAL_SIGNATURE))

SUBSCRIBE_ID = 1
BACKFILL_ID = 2


def subscription_requests(contract: str, from_block: int) -> list[dict]:
    """eth_subscribe for new proposals, then eth_getLogs to backfill from `from_block`.

    Subscribing first means nothing falls between the two; an event seen by
    both is delivered twice, which only resets the turner's deadline again.
    """
    log_filter = {"address": contract, "topics": [NEW_PROPOSAL_TOPIC]}
    return [
        {"jsonrpc": "2.0", "id": SUBSCRIBE_ID, "method": "eth_subscribe", "params": ["logs", log_filter]},
        {
            "jsonrpc": "2.0",
            "id": BACKFILL_ID,
            "method": "eth_getLogs",
            "params": [{**log_filter, "fromBlock": hex(from_block), "toBlock": "latest"}],
        },
    ]


def parse_message(raw_msg: str | bytes, on_connected: Callable[[str], None] | None = None) -> list[ChainEvent]:
    """
    Decode one websocket frame into zero or more ChainEvents.

    Frames we handle:
    - id=SUBSCRIBE_ID result     -> subscription id, reported through on_connected
    - id=BACKFILL_ID result      -> list of past logs
    - method=eth_subscription    -> one new log
    - error                      -> RuntimeError, the caller reconnects
    """
    try:
        obj = json.loads(raw_msg)
    except json.JSONDecodeError:
        log.debug("WS raw (non-JSON): %s", raw_msg[:200])
        return []

    if obj.get("error"):
        raise RuntimeError(f"node returned error: {obj['error']}")

    if obj.get("method") == "eth_subscription":
        logs = [obj["params"]["result"]]
    elif obj.get("id") == SUBSCRIBE_ID:
        if on_connected:
            on_connected(obj.get("result"))
        return []
    elif obj.get("id") == BACKFILL_ID:
        logs = obj.get("result") or []
    else:
        log.debug("WS unknown message: %s", str(obj)[:200])
        return []

    events = []
    for entry in logs:
        if entry.get("removed"):
            # dropped by a reorg
            continue
        try:
            events.append(ChainEvent.from_log(entry))
        except (KeyError, ValueError) as e:
            log.warning("Undecodable NewProposal log: %s", e)
    return events


async def proposal_listener(
    stop: asyncio.Event,
    ws_url: str,
    contract: str,
    event_queue: asyncio.Queue,
    *,
    from_block: int = 0,
    on_connected: Callable[[str], None] | None = None,
) -> None:
    """
    Connect to the layer-1 WebSocket and publish NewProposal events to `event_queue`.

    Parameters
    ----------
    stop:
        Event to signal graceful shutdown
    ws_url:
        WebSocket URL (e.g., "ws://testnet:5000")
    contract:
        Address of the rollup coordinator contract
    event_queue:
        Queue the block turner consumes
    from_block:
        First block to replay proposals from
    on_connected:
        Called with the subscription id after each successful subscribe
    """
    backoff = RECONNECT_BASE
    next_block = from_block

    while not stop.is_set():
        try:
            async with websockets.connect(
                ws_url,
                ping_interval=20,
                ping_timeout=20,
                close_timeout=1,
            ) as ws:
                log.info("WS connected: %s (replaying from block %s)", ws_url, next_block)
                for req in subscription_requests(contract, next_block):
                    await ws.send(json.dumps(req))

                backoff = RECONNECT_BASE

                while not stop.is_set():
                    recv_task = asyncio.create_task(ws.recv())
                    halt_task = asyncio.create_task(stop.wait())

                    done, pending = await asyncio.wait(
                        {recv_task, halt_task},
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    for t in pending:
                        t.cancel()

                    if halt_task in done:
                        log.info("WS listener received stop signal")
                        return

                    for event in parse_message(recv_task.result(), on_connected):
                        # Resume inclusively: a block may hold several proposals
                        next_block = max(next_block, event.block_number)
                        await event_queue.put(event)

        except asyncio.CancelledError:
            log.info("WS listener cancelled")
            raise
        except Exception as e:
            log.error("WS connection error: %s", e)

        if stop.is_set():
            break

        log.info("WS reconnecting in %.1fs", backoff)
        await asyncio.sleep(backoff)
        backoff = min(backoff * 2, RECONNECT_MAX)

    log.info("WS listener stopped")

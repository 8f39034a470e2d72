"""Chain-facing collaborator: the wallet node that owns keys and the prover.

The node speaks JSON-RPC over HTTP. Shielded transactions are not sent
through the node but posted straight to the layer-2 coordinator's `/tx`
endpoint; the raw response is handed back so callers can look at the status.
"""

import asyncio
import itertools
import logging
from typing import Any, Protocol

import httpx

import l2load.constants as C
from l2load.models import GeneratedTx, Utxo

log = logging.getLogger("l2load.node")


class WalletClient(Protocol):
    zk_address: str
    eth_address: str

    async def deposit_ether(self, amount: int, fee: int, to: str | None = None, salt: int | None = None) -> bool: ...
    async def get_utxos(self, status: C.UtxoStatus = C.UtxoStatus.UNSPENT) -> list[Utxo]: ...
    async def shield_tx(self, tx: GeneratedTx) -> Any: ...
    async def send_layer2_tx(self, zk_tx: Any) -> httpx.Response: ...
    async def staged_deposit_merged(self) -> int: ...


class RPCError(Exception):
    def __init__(self, method: str, error: dict):
        self.method = method
        self.code = error.get("code")
        super().__init__(f"{method} failed ({self.code}): {error.get('message')}")


class DepositError(RuntimeError):
    """A deposit the caller cannot continue without was not accepted."""


class NodeClient:
    """WalletClient bound to one account of the node's HD wallet."""

    def __init__(
        self,
        node_url: str,
        coordinator_url: str,
        *,
        account_index: int = 0,
        timeout: float = 30.0,
        http: httpx.AsyncClient | None = None,
    ):
        self.node_url = node_url
        self.coordinator_url = coordinator_url.rstrip("/")
        self.account_index = account_index
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)
        self.zk_address = ""
        self.eth_address = ""

    async def _rpc(self, method: str, *params: Any) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}
        r = await self._http.post(self.node_url, json=payload)
        r.raise_for_status()
        body = r.json()
        if body.get("error"):
            raise RPCError(method, body["error"])
        return body.get("result")

    async def wait_until_ready(self, max_retries: int = 30, retry_delay: float = 2.0) -> None:
        """Probe the node until it answers, then load the account addresses."""
        for attempt in range(1, max_retries + 1):
            try:
                account = await self._rpc("wallet_account", self.account_index)
                break
            except (httpx.HTTPError, RPCError) as e:
                if attempt == max_retries:
                    log.error("Wallet node failed after %s attempts", max_retries)
                    raise
                log.info(
                    "Wallet node not ready yet (attempt %s/%s): %s - retrying in %ss...",
                    attempt, max_retries, e.__class__.__name__, retry_delay,
                )
                await asyncio.sleep(retry_delay)
        self.zk_address = account["zkAddress"]
        self.eth_address = account["ethAddress"]
        log.info("Using account #%s %s", self.account_index, self.eth_address)

    async def deposit_ether(self, amount: int, fee: int, to: str | None = None, salt: int | None = None) -> bool:
        params = {"account": self.account_index, "eth": str(amount), "fee": str(fee)}
        if to is not None:
            params["to"] = to
        if salt is not None:
            params["salt"] = str(salt)
        return bool(await self._rpc("wallet_depositEther", params))

    async def get_utxos(self, status: C.UtxoStatus = C.UtxoStatus.UNSPENT) -> list[Utxo]:
        notes = await self._rpc("wallet_getUtxos", self.account_index, status.value)
        return [Utxo.from_dict(n) for n in notes or []]

    async def shield_tx(self, tx: GeneratedTx) -> Any:
        return await self._rpc("wallet_shieldTx", self.account_index, tx.to_dict())

    async def staged_deposit_merged(self) -> int:
        staged = await self._rpc("l1_stagedDeposits")
        return int(staged["merged"])

    async def send_layer2_tx(self, zk_tx: Any) -> httpx.Response:
        url = f"{self.coordinator_url}/tx"
        if isinstance(zk_tx, str):
            # hex-encoded zkTx
            return await self._http.post(url, content=zk_tx)
        return await self._http.post(url, json=zk_tx)

    async def aclose(self) -> None:
        await self._http.aclose()

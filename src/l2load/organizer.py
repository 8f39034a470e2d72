"""Client for the organizer service that tracks wallets and aggregate queue load."""

import logging
from typing import Protocol

import httpx

import l2load.constants as C

log = logging.getLogger("l2load.organizer")


class CoordinatorClient(Protocol):
    async def registered_node_info(self) -> list[dict]: ...
    async def register(self, wallet_id: int | None, address: str, wei_per_byte: int) -> dict | str: ...
    async def txs_in_queues(self) -> int: ...


class OrganizerClient:
    """HTTP client for the organizer. Errors surface as `httpx.HTTPError`."""

    def __init__(self, base_url: str, *, timeout: float = C.HTTP_TIMEOUT, http: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def registered_node_info(self) -> list[dict]:
        r = await self._http.get("/registered-node-info")
        r.raise_for_status()
        return r.json()

    async def register(self, wallet_id: int | None, address: str, wei_per_byte: int) -> dict | str:
        body = {
            "role": "wallet",
            "params": {
                "id": wallet_id,
                "from": address,
                "weiPerByte": str(wei_per_byte),
            },
        }
        r = await self._http.post("/register", json=body)
        r.raise_for_status()
        try:
            return r.json()
        except ValueError:
            return r.text

    async def txs_in_queues(self) -> int:
        """Jobs currently queued across every wallet (the backpressure signal)."""
        r = await self._http.get("/txs-in-queues")
        r.raise_for_status()
        return int(r.json()["currentTxs"])

    async def aclose(self) -> None:
        await self._http.aclose()

"""Domain data structures shared by the generator, its worker and the block turner."""

from dataclasses import dataclass
from typing import Any

from eth_utils import to_int

import l2load.constants as C


@dataclass(frozen=True, slots=True)
class Utxo:
    """A spendable note. Values are wei, salts are unique per account."""

    salt: int
    value: int
    status: C.UtxoStatus = C.UtxoStatus.UNSPENT
    hash: str | None = None

    def to_dict(self) -> dict:
        d = {"salt": str(self.salt), "eth": str(self.value), "status": self.status.value}
        if self.hash is not None:
            d["hash"] = self.hash
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Utxo":
        """Parse a note as returned by the wallet node or stored in a job.

        Integers arrive as decimal strings, since values exceed 2**53.
        """
        return cls(
            salt=int(d["salt"]),
            value=int(d["eth"]),
            status=C.UtxoStatus(d.get("status", C.UtxoStatus.UNSPENT)),
            hash=d.get("hash"),
        )


@dataclass(frozen=True, slots=True)
class GeneratedTx:
    inflow: tuple[Utxo, ...]
    outflow: tuple[Utxo, ...]
    fee_per_byte: int
    recipient: str

    def to_dict(self) -> dict:
        return {
            "inflow": [u.to_dict() for u in self.inflow],
            "outflow": [u.to_dict() for u in self.outflow],
            "weiPerByte": str(self.fee_per_byte),
            "to": self.recipient,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "GeneratedTx":
        return cls(
            inflow=tuple(Utxo.from_dict(u) for u in d["inflow"]),
            outflow=tuple(Utxo.from_dict(u) for u in d["outflow"]),
            fee_per_byte=int(d["weiPerByte"]),
            recipient=d["to"],
        )


@dataclass(frozen=True, slots=True)
class ShieldedJob:
    """Unit of work on the submission queue: the tx plus its opaque proof payload."""

    tx: GeneratedTx
    zk_tx: Any

    def to_dict(self) -> dict:
        return {"tx": self.tx.to_dict(), "zkTx": self.zk_tx}

    @classmethod
    def from_dict(cls, d: dict) -> "ShieldedJob":
        return cls(tx=GeneratedTx.from_dict(d["tx"]), zk_tx=d["zkTx"])

    @property
    def input_salts(self) -> list[int]:
        return [u.salt for u in self.tx.inflow]


@dataclass(frozen=True, slots=True)
class ChainEvent:
    """A NewProposal event observed on the rollup contract."""

    proposal_num: int
    block_hash: str
    block_number: int

    @classmethod
    def from_log(cls, log: dict) -> "ChainEvent":
        """Decode an `eth_getLogs` / `eth_subscribe` log entry.

        NewProposal(uint256 proposalNum, bytes32 blockHash) has no indexed
        arguments, so both live in `data` as two 32-byte words.
        """
        data = log["data"]
        if data.startswith("0x"):
            data = data[2:]
        if len(data) < 128:
            raise ValueError(f"NewProposal log data too short: {log['data']!r}")
        return cls(
            proposal_num=int(data[:64], 16),
            block_hash="0x" + data[64:128],
            block_number=to_int(hexstr=log["blockNumber"]),
        )


@dataclass
class GeneratorStats:
    generated: int = 0
    shield_failures: int = 0
    backpressure_waits: int = 0
    submitted: int = 0
    rejected: int = 0
    last_error: str | None = None

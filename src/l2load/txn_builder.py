import json
from dataclasses import dataclass

from l2load.allocator import left
from l2load.models import GeneratedTx, Utxo


class InsufficientValueError(ValueError):
    """The input note cannot pay the minimal fee and still send something."""


@dataclass(frozen=True, slots=True)
class FeePolicy:
    """How much of an input note a self-transfer sends.

    The spendable part is the input value minus `fee_floor`; `1/send_divisor`
    of it is sent. With a zero floor and divisor 2 this is a plain halving.
    Exact fee accounting happens when the tx is shielded.
    """

    fee_floor: int = 0
    send_divisor: int = 2

    def send_amount(self, value: int) -> int:
        spendable = value - self.fee_floor
        if spendable <= 0:
            raise InsufficientValueError(f"note value {value} does not cover fee floor {self.fee_floor}")
        amount = spendable // self.send_divisor
        if amount <= 0:
            raise InsufficientValueError(f"note value {value} leaves nothing to send")
        return amount


def build_transfer(utxo: Utxo, fee_per_byte: int, recipient: str, policy: FeePolicy | None = None) -> GeneratedTx:
    """Self-transfer spending `utxo`.

    The single outflow fixed here carries salt `left(utxo.salt)`; the change
    note is added by the shielding side when it settles the fee.
    """
    policy = policy or FeePolicy()
    amount = policy.send_amount(utxo.value)
    note = Utxo(salt=left(utxo.salt), value=amount)
    return GeneratedTx(inflow=(utxo,), outflow=(note,), fee_per_byte=fee_per_byte, recipient=recipient)


def describe(tx: GeneratedTx) -> str:
    """Compact JSON dump of a generated tx for debug logs."""
    parsed = {
        "inflow": [{"hash": u.hash, "salt": str(u.salt), "eth": str(u.value)} for u in tx.inflow],
        "outflow": [{"salt": str(u.salt), "eth": str(u.value)} for u in tx.outflow],
    }
    return json.dumps(parsed)

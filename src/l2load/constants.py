from typing import Final
from enum import StrEnum

MAIN_QUEUE: Final = "mainQueue"


def wallet_queue_name(wallet_id: int | None) -> str:
    """Private queue consumed by the worker of one wallet."""
    return f"wallet_{wallet_id}"


class UtxoStatus(StrEnum):
    UNSPENT = "UNSPENT"
    PENDING = "PENDING"
    SPENT   = "SPENT"


class GeneratorStage(StrEnum):
    REGISTERING         = "REGISTERING"
    DEPOSITING          = "DEPOSITING"
    AWAITING_ACTIVATION = "AWAITING_ACTIVATION"
    ACTIVE              = "ACTIVE"
    STOPPED             = "STOPPED"


class TurnerState(StrEnum):
    STARTING = "STARTING"
    ARMED    = "ARMED"
    FIRING   = "FIRING"


# Finished jobs kept in redis per queue
KEEP_FINISHED = 1000
RETRY_BACKOFF = 1.0  # first retry delay, doubled per attempt
HTTP_TIMEOUT = 5.0

__all__ = [
    "HTTP_TIMEOUT",
    "KEEP_FINISHED",
    "MAIN_QUEUE",
    "RETRY_BACKOFF",
    "wallet_queue_name",

    ######
    "GeneratorStage",
    "TurnerState",
    "UtxoStatus",
]

import os
import tomllib
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path

from eth_utils import to_wei

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

cfg = tomllib.loads(Path(config_file).read_text())

# Environment wins over the packaged defaults
cfg["organizer"]["url"] = os.getenv("ORGANIZER_URL", cfg["organizer"]["url"])
cfg["redis"]["host"] = os.getenv("REDIS_HOST", cfg["redis"]["host"])
cfg["redis"]["port"] = int(os.getenv("REDIS_PORT", cfg["redis"]["port"]))
cfg["node"]["url"] = os.getenv("NODE_URL", cfg["node"]["url"])
cfg["node"]["ws_url"] = os.getenv("WS_URL", cfg["node"]["ws_url"])
cfg["node"]["coordinator_url"] = os.getenv("COORDINATOR_URL", cfg["node"]["coordinator_url"])
cfg["node"]["contract"] = os.getenv("ZKOPRU_CONTRACT", cfg["node"]["contract"])
cfg["blockturner"]["from_block"] = int(os.getenv("FROM_BLOCK", cfg["blockturner"]["from_block"]))


def parse_amount(value: int | str) -> int:
    """Turn a config amount into wei.

    Accepts a plain integer (already wei), a decimal string, or "<number> <unit>"
    with any unit `eth_utils.to_wei` knows ("gwei", "ether", ...).
    """
    if isinstance(value, int):
        return value
    parts = value.split()
    if len(parts) == 1:
        return int(parts[0])
    if len(parts) == 2:
        number, unit = parts
        return to_wei(Decimal(number), unit.lower())
    raise ValueError(f"Unparseable amount: {value!r}")


@dataclass(frozen=True)
class GeneratorSettings:
    """Policy knobs for one transfer generator. Times in seconds, amounts in wei."""

    activation_poll: float = 5.0
    queue_poll: float = 1.0
    utxo_backoff: float = 5.0
    main_queue_limit: int = 1000
    wei_per_byte: int = 4_000 * 10**9
    deposit_amount: int = 1_000 * 10**18
    deposit_fee: int = 2 * 10**17
    initial_salt: int = 1
    estimated_tx_bytes: int = 1024
    send_divisor: int = 2
    attempts: int = 1
    retry_backoff: float = 1.0

    def __post_init__(self):
        for name in ("activation_poll", "queue_poll", "utxo_backoff", "retry_backoff"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.send_divisor < 1:
            raise ValueError("send_divisor must be >= 1")

    @property
    def fee_floor(self) -> int:
        return self.wei_per_byte * self.estimated_tx_bytes

    @classmethod
    def from_config(cls, conf: dict, **overrides) -> "GeneratorSettings":
        g, q = conf["generator"], conf["queue"]
        values = dict(
            activation_poll=float(g["activation_poll"]),
            queue_poll=float(g["queue_poll"]),
            utxo_backoff=float(g["utxo_backoff"]),
            main_queue_limit=int(g["main_queue_limit"]),
            wei_per_byte=parse_amount(g["wei_per_byte"]),
            deposit_amount=parse_amount(g["deposit_amount"]),
            deposit_fee=parse_amount(g["deposit_fee"]),
            initial_salt=int(g["initial_salt"]),
            estimated_tx_bytes=int(g["estimated_tx_bytes"]),
            send_divisor=int(g["send_divisor"]),
            attempts=int(q["attempts"]),
            retry_backoff=float(q["retry_backoff"]),
        )
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class BlockTurnerSettings:
    ready_poll: float = 14.0
    grace: float = 35.0
    block_time: float = 14.0
    blocks: int = 15
    fallback_amount: int = 1
    fallback_fee: int = 10**17
    account_index: int = 2
    expected_wallets: int = 0
    from_block: int = 0

    def __post_init__(self):
        if self.ready_poll <= 0 or self.deadline <= 0:
            raise ValueError("ready_poll and deadline must be positive")

    @property
    def deadline(self) -> float:
        """About `blocks` block periods."""
        return self.block_time * self.blocks

    @classmethod
    def from_config(cls, conf: dict, **overrides) -> "BlockTurnerSettings":
        b = conf["blockturner"]
        values = dict(
            ready_poll=float(b["ready_poll"]),
            grace=float(b["grace"]),
            block_time=float(b["block_time"]),
            blocks=int(b["blocks"]),
            fallback_amount=parse_amount(b["fallback_amount"]),
            fallback_fee=parse_amount(b["fallback_fee"]),
            account_index=int(b["account_index"]),
            expected_wallets=int(b["expected_wallets"]),
            from_block=int(b["from_block"]),
        )
        values.update(overrides)
        return cls(**values)

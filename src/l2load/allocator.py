"""Double-spend-safe input selection over the salt chain.

Salts form a binary tree: the note spent with salt `s` yields successors
`left(s) = 2s` and `right(s) = 2s + 1`. The transfer generator only ever
follows the left branch, so starting from the deposit note (salt 1) the chain
reads 1, 2, 4, 8, ... The right branch is left free for change notes the
shielding side may create; it is never chosen by the builder.

    2 - 4 ...
  /
1
  \\
    3 - 6 ...
"""

import logging
from collections.abc import Iterable, Sequence

from l2load.models import Utxo

log = logging.getLogger("l2load.allocator")


def left(salt: int) -> int:
    return 2 * salt


def right(salt: int) -> int:
    return 2 * salt + 1


class SaltAllocator:
    """Tracks consumed salts for one participant.

    The used set is the source of truth for "already spent". The node's
    unspent view may lag behind, so a note can still be listed as unspent
    after we have shielded and queued a tx consuming it.

    Reconciliation has two paths: `mark_used` after a successful shield, and
    `unlock` when the network rejects a queued job.
    """

    def __init__(self) -> None:
        self.used: set[int] = set()

    def __len__(self) -> int:
        return len(self.used)

    def __contains__(self, salt: int) -> bool:
        return salt in self.used

    def select_input(self, candidates: Sequence[Utxo]) -> Utxo | None:
        """First candidate, in the order given, whose salt has not been used."""
        for utxo in candidates:
            if utxo.salt not in self.used:
                return utxo
        return None

    def mark_used(self, salt: int) -> None:
        if salt in self.used:
            # Only reachable if a caller skipped select_input
            raise ValueError(f"salt {salt} already marked used")
        self.used.add(salt)

    def unlock(self, salts: Iterable[int]) -> list[int]:
        """Release salts so the unspent set is authoritative for them again."""
        released = []
        for salt in salts:
            if salt in self.used:
                self.used.discard(salt)
                released.append(salt)
            else:
                log.debug("unlock: salt %s was not marked used", salt)
        return released

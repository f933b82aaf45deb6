"""Ledger-facing value types."""

from __future__ import annotations

from dataclasses import dataclass, field

from ledger_deploy.utils.ids import make_outpoint


@dataclass(slots=True, frozen=True)
class SpendableOutput:
    """A fund-bearing output owned by the funding key."""

    txid: str
    vout: int
    satoshis: int
    script: str = ""

    @property
    def outpoint(self) -> str:
        return make_outpoint(self.txid, self.vout)


@dataclass(slots=True, frozen=True)
class SignedTransaction:
    """A fully signed transaction ready for broadcast.

    ``outputs`` lists the outputs paying back to the funding key (split
    outputs and change), so callers can spend them without an indexer round trip.
    """

    txid: str
    raw_hex: str
    fee: int
    inputs: tuple[str, ...] = ()
    outputs: tuple[SpendableOutput, ...] = field(default_factory=tuple)

    @property
    def size(self) -> int:
        return len(self.raw_hex) // 2


__all__ = ["SignedTransaction", "SpendableOutput"]

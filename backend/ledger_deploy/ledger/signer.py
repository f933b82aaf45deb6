"""Transaction signing seam and a deterministic simulated signer."""

from __future__ import annotations

import math
from typing import Protocol, Sequence, runtime_checkable

import orjson

from ledger_deploy.core.errors import InsufficientFundsError
from ledger_deploy.ledger.types import SignedTransaction, SpendableOutput
from ledger_deploy.utils.hashing import sha256_bytes, sha256_text

TX_BASE_SIZE = 10
TX_INPUT_SIZE = 148
TX_OUTPUT_SIZE = 34
TX_OVERHEAD = 500
UTXO_FETCH_BUFFER = 100
INSCRIPTION_SATS = 1


def estimate_fee(size_bytes: int, fee_rate: float) -> int:
    """Fee in satoshis for ``size_bytes`` at ``fee_rate`` sats per kilobyte."""
    return max(1, math.ceil(size_bytes / 1000 * fee_rate))


def split_transaction_size(input_count: int, output_count: int) -> int:
    return TX_BASE_SIZE + TX_INPUT_SIZE * input_count + TX_OUTPUT_SIZE * output_count


def publish_transaction_size(payload_size: int) -> int:
    return payload_size + TX_OVERHEAD


def publish_cost(payload_size: int, fee_rate: float) -> int:
    """Satoshis one publish output must carry: the inscription plus its fee."""
    return INSCRIPTION_SATS + estimate_fee(publish_transaction_size(payload_size), fee_rate)


def plan_split(inputs: Sequence[SpendableOutput], amounts: Sequence[int], fee_rate: float) -> tuple[list[int], int]:
    """Output values (amounts, then change when positive) and the fee of a split."""
    available = sum(item.satoshis for item in inputs)
    fee = estimate_fee(split_transaction_size(len(inputs), len(amounts) + 1), fee_rate)
    change = available - sum(amounts) - fee
    if change < 0:
        raise InsufficientFundsError(f"Insufficient funds: need {sum(amounts) + fee} sats, have {available}")
    return list(amounts) + ([change] if change > 0 else []), fee


def plan_publish(funding: SpendableOutput, payload_size: int, fee_rate: float) -> tuple[int, int]:
    """Change left after the inscription output and the fee, and the fee itself."""
    fee = estimate_fee(publish_transaction_size(payload_size), fee_rate)
    change = funding.satoshis - INSCRIPTION_SATS - fee
    if change < 0:
        raise InsufficientFundsError(
            f"Output {funding.outpoint} holds {funding.satoshis} sats, publish needs {INSCRIPTION_SATS + fee}"
        )
    return change, fee


@runtime_checkable
class TransactionSigner(Protocol):
    """Builds and signs transactions for the single funding key."""

    @property
    def address(self) -> str: ...

    def build_split(
        self,
        inputs: Sequence[SpendableOutput],
        amounts: Sequence[int],
        fee_rate: float,
    ) -> SignedTransaction: ...

    def build_publish(
        self,
        payload: bytes,
        content_type: str,
        funding: SpendableOutput,
        fee_rate: float,
        metadata: dict[str, str] | None = None,
    ) -> SignedTransaction: ...


class SimulatedSigner:
    """Deterministic stand-in signer used for dry runs and tests.

    The "raw transaction" is a canonical JSON description of the spend, so the
    same inputs always give the same txid. Vout 0 of a publish is the
    published entry; vout 1 (when present) returns change to the funding key.
    """

    def __init__(self, funding_key: str = "simulated") -> None:
        self._address = "sim" + sha256_text(funding_key)[:31]

    @property
    def address(self) -> str:
        return self._address

    def build_split(
        self,
        inputs: Sequence[SpendableOutput],
        amounts: Sequence[int],
        fee_rate: float,
    ) -> SignedTransaction:
        values, fee = plan_split(inputs, amounts, fee_rate)
        raw = self._encode({"kind": "split", "inputs": [i.outpoint for i in inputs], "outputs": values})
        txid = sha256_bytes(raw)
        outputs = tuple(SpendableOutput(txid=txid, vout=vout, satoshis=value) for vout, value in enumerate(values))
        return SignedTransaction(
            txid=txid,
            raw_hex=raw.hex(),
            fee=fee,
            inputs=tuple(i.outpoint for i in inputs),
            outputs=outputs,
        )

    def build_publish(
        self,
        payload: bytes,
        content_type: str,
        funding: SpendableOutput,
        fee_rate: float,
        metadata: dict[str, str] | None = None,
    ) -> SignedTransaction:
        change, fee = plan_publish(funding, len(payload), fee_rate)
        raw = self._encode(
            {
                "kind": "publish",
                "input": funding.outpoint,
                "contentType": content_type,
                "payload": sha256_bytes(payload),
                "size": len(payload),
                "metadata": metadata or {},
            }
        )
        txid = sha256_bytes(raw)
        outputs = (SpendableOutput(txid=txid, vout=1, satoshis=change),) if change > 0 else ()
        return SignedTransaction(txid=txid, raw_hex=raw.hex(), fee=fee, inputs=(funding.outpoint,), outputs=outputs)

    @staticmethod
    def _encode(description: dict) -> bytes:
        return orjson.dumps(description, option=orjson.OPT_SORT_KEYS)


__all__ = [
    "INSCRIPTION_SATS",
    "SimulatedSigner",
    "TX_OVERHEAD",
    "TransactionSigner",
    "UTXO_FETCH_BUFFER",
    "estimate_fee",
    "plan_publish",
    "plan_split",
    "publish_cost",
    "publish_transaction_size",
    "split_transaction_size",
]

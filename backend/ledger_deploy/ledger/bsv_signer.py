"""Signer for live deployments backed by the BSV SDK.

Publish transactions carry a 1Sat Ordinals inscription: output 0 holds the
payload in an ``ord`` envelope ahead of a P2PKH lock to the funding address,
output 1 (when positive) returns change. Split transactions pay every amount
and the change back to the same address.
"""

from __future__ import annotations

from typing import Sequence

from bsv import P2PKH, PrivateKey, Script, Transaction, TransactionInput, TransactionOutput

from ledger_deploy.core.errors import ConfigurationError
from ledger_deploy.ledger.signer import INSCRIPTION_SATS, plan_publish, plan_split
from ledger_deploy.ledger.types import SignedTransaction, SpendableOutput

MAP_PREFIX = b"1PuQa7K62MiKCtssSLKy1kh56WWU7MtUR5"

OP_0 = b"\x00"
OP_1 = b"\x51"
OP_IF = b"\x63"
OP_ENDIF = b"\x68"
OP_RETURN = b"\x6a"
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E


def push_data(data: bytes) -> bytes:
    """Encode ``data`` as a single script push."""
    size = len(data)
    if size < OP_PUSHDATA1:
        return bytes([size]) + data
    if size <= 0xFF:
        return bytes([OP_PUSHDATA1, size]) + data
    if size <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + size.to_bytes(2, "little") + data
    return bytes([OP_PUSHDATA4]) + size.to_bytes(4, "little") + data


def inscription_envelope(payload: bytes, content_type: str) -> bytes:
    """``OP_0 OP_IF "ord" OP_1 <content type> OP_0 <payload> OP_ENDIF``."""
    return b"".join(
        [
            OP_0,
            OP_IF,
            push_data(b"ord"),
            OP_1,
            push_data(content_type.encode("utf-8")),
            OP_0,
            push_data(payload),
            OP_ENDIF,
        ]
    )


def map_metadata(metadata: dict[str, str]) -> bytes:
    """``OP_RETURN <MAP prefix> SET key value ...``; ``app`` and ``type`` are required."""
    if not metadata.get("app") or not metadata.get("type"):
        raise ValueError("Inscription metadata needs both 'app' and 'type'")
    parts = [OP_RETURN, push_data(MAP_PREFIX), push_data(b"SET")]
    for key, value in metadata.items():
        parts.append(push_data(key.encode("utf-8")))
        parts.append(push_data(str(value).encode("utf-8")))
    return b"".join(parts)


class FundingKeySigner:
    """Signs split and publish transactions with one WIF funding key."""

    def __init__(self, funding_key: str) -> None:
        try:
            self._key = PrivateKey(funding_key)
            self._address = self._key.address()
        except Exception as exc:
            raise ConfigurationError(f"Invalid funding key: {exc}") from exc
        self._lock = P2PKH().lock(self._address)

    @property
    def address(self) -> str:
        return self._address

    @property
    def locking_script_hex(self) -> str:
        return self._lock.hex()

    def build_split(
        self,
        inputs: Sequence[SpendableOutput],
        amounts: Sequence[int],
        fee_rate: float,
    ) -> SignedTransaction:
        values, fee = plan_split(inputs, amounts, fee_rate)
        outputs = [TransactionOutput(locking_script=self._lock, satoshis=value) for value in values]
        tx = self._sign(inputs, outputs)
        txid = tx.txid()
        return SignedTransaction(
            txid=txid,
            raw_hex=tx.hex(),
            fee=fee,
            inputs=tuple(item.outpoint for item in inputs),
            outputs=tuple(
                SpendableOutput(txid=txid, vout=vout, satoshis=value, script=self.locking_script_hex)
                for vout, value in enumerate(values)
            ),
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
        script = inscription_envelope(payload, content_type) + self._lock.serialize()
        if metadata:
            script += map_metadata(metadata)
        outputs = [TransactionOutput(locking_script=Script(script), satoshis=INSCRIPTION_SATS)]
        if change > 0:
            outputs.append(TransactionOutput(locking_script=self._lock, satoshis=change))
        tx = self._sign([funding], outputs)
        txid = tx.txid()
        return SignedTransaction(
            txid=txid,
            raw_hex=tx.hex(),
            fee=fee,
            inputs=(funding.outpoint,),
            outputs=(
                (SpendableOutput(txid=txid, vout=1, satoshis=change, script=self.locking_script_hex),)
                if change > 0
                else ()
            ),
        )

    def _sign(self, funding: Sequence[SpendableOutput], outputs: list[TransactionOutput]) -> Transaction:
        inputs = []
        for item in funding:
            tx_input = TransactionInput(
                source_txid=item.txid,
                source_output_index=item.vout,
                unlocking_script_template=P2PKH().unlock(self._key),
            )
            # Every funding output is a P2PKH lock to this key; the sighash needs its value and script.
            tx_input.satoshis = item.satoshis
            tx_input.locking_script = self._lock
            inputs.append(tx_input)
        tx = Transaction(inputs, outputs, version=1)
        tx.sign()
        return tx


__all__ = ["FundingKeySigner", "inscription_envelope", "map_metadata", "push_data"]

"""Funding-key signer tests; everything is built and checked offline."""

from __future__ import annotations

import hashlib

import pytest
from bsv import PrivateKey, Transaction

from ledger_deploy.core.errors import ConfigurationError, InsufficientFundsError
from ledger_deploy.ledger.bsv_signer import FundingKeySigner, inscription_envelope, map_metadata, push_data
from ledger_deploy.ledger.signer import INSCRIPTION_SATS, TransactionSigner, plan_publish, plan_split
from ledger_deploy.ledger.types import SpendableOutput


def _double_sha_txid(raw_hex: str) -> str:
    return hashlib.sha256(hashlib.sha256(bytes.fromhex(raw_hex)).digest()).digest()[::-1].hex()


@pytest.fixture
def signer() -> FundingKeySigner:
    return FundingKeySigner(PrivateKey().wif())


def test_invalid_funding_key_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="Invalid funding key"):
        FundingKeySigner("not-a-key")


def test_signer_satisfies_protocol(signer: FundingKeySigner) -> None:
    assert isinstance(signer, TransactionSigner)
    assert signer.address.startswith("1")


def test_split_pays_amounts_then_change(signer: FundingKeySigner) -> None:
    inputs = [
        SpendableOutput(txid="ab" * 32, vout=0, satoshis=40_000),
        SpendableOutput(txid="cd" * 32, vout=3, satoshis=20_000),
    ]

    tx = signer.build_split(inputs, [1_000, 2_000], 1.0)

    values, fee = plan_split(inputs, [1_000, 2_000], 1.0)
    assert tx.fee == fee
    assert [output.satoshis for output in tx.outputs] == values == [1_000, 2_000, 60_000 - 3_000 - fee]
    assert [output.vout for output in tx.outputs] == [0, 1, 2]
    assert {output.txid for output in tx.outputs} == {tx.txid}
    assert tx.inputs == ("ab" * 32 + "_0", "cd" * 32 + "_3")
    assert tx.txid == _double_sha_txid(tx.raw_hex)

    parsed = Transaction.from_hex(tx.raw_hex)
    assert len(parsed.inputs) == 2
    assert [output.satoshis for output in parsed.outputs] == values
    assert all(output.locking_script.hex() == signer.locking_script_hex for output in parsed.outputs)


def test_publish_inscribes_payload_at_output_zero(signer: FundingKeySigner) -> None:
    payload = b"<html><body>hello ledger</body></html>"
    funding = SpendableOutput(txid="ef" * 32, vout=1, satoshis=5_000)

    tx = signer.build_publish(payload, "text/html", funding, 1.0)

    change, fee = plan_publish(funding, len(payload), 1.0)
    assert tx.fee == fee
    assert tx.inputs == (funding.outpoint,)
    assert tx.outputs == (
        SpendableOutput(txid=tx.txid, vout=1, satoshis=change, script=signer.locking_script_hex),
    )
    assert tx.txid == _double_sha_txid(tx.raw_hex)

    parsed = Transaction.from_hex(tx.raw_hex)
    inscription, returned = parsed.outputs
    assert inscription.satoshis == INSCRIPTION_SATS
    assert inscription.locking_script.serialize() == (
        inscription_envelope(payload, "text/html") + bytes.fromhex(signer.locking_script_hex)
    )
    assert returned.satoshis == change


def test_publish_without_change_has_one_output(signer: FundingKeySigner) -> None:
    payload = b"body{}"
    _, fee = plan_publish(SpendableOutput(txid="00" * 32, vout=0, satoshis=10**6), len(payload), 1.0)
    funding = SpendableOutput(txid="01" * 32, vout=0, satoshis=INSCRIPTION_SATS + fee)

    tx = signer.build_publish(payload, "text/css", funding, 1.0)

    assert tx.outputs == ()
    assert len(Transaction.from_hex(tx.raw_hex).outputs) == 1


def test_metadata_follows_the_lock(signer: FundingKeySigner) -> None:
    funding = SpendableOutput(txid="02" * 32, vout=0, satoshis=5_000)
    tx = signer.build_publish(b"{}", "application/json", funding, 1.0, metadata={"app": "ldep", "type": "ord"})

    script = Transaction.from_hex(tx.raw_hex).outputs[0].locking_script.serialize()
    assert script.endswith(map_metadata({"app": "ldep", "type": "ord"}))
    with pytest.raises(ValueError):
        map_metadata({"app": "ldep"})


def test_underfunded_transactions_are_refused(signer: FundingKeySigner) -> None:
    small = SpendableOutput(txid="03" * 32, vout=0, satoshis=50)

    with pytest.raises(InsufficientFundsError):
        signer.build_split([small], [1_000], 1.0)
    with pytest.raises(InsufficientFundsError):
        signer.build_publish(b"x" * 2_000, "text/plain", small, 1.0)


@pytest.mark.parametrize(
    ("size", "prefix"),
    [(3, b"\x03"), (80, b"\x4c\x50"), (300, b"\x4d\x2c\x01"), (70_000, b"\x4e\x70\x11\x01\x00")],
)
def test_push_data_prefixes(size: int, prefix: bytes) -> None:
    data = b"\x07" * size
    assert push_data(data) == prefix + data


def test_envelope_layout() -> None:
    assert inscription_envelope(b"hi", "text/plain") == (
        b"\x00\x63\x03ord\x51\x0atext/plain\x00\x02hi\x68"
    )

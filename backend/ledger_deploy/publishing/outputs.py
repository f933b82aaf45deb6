"""Spendable-output controller shared by every publish job in a run."""

from __future__ import annotations

import asyncio
from typing import Mapping

from ledger_deploy.core.config import RetryPolicy
from ledger_deploy.core.errors import InsufficientFundsError, PublishError
from ledger_deploy.core.logging import get_logger
from ledger_deploy.ledger.indexer import IndexerService
from ledger_deploy.ledger.signer import (
    UTXO_FETCH_BUFFER,
    TransactionSigner,
    estimate_fee,
    split_transaction_size,
)
from ledger_deploy.ledger.types import SignedTransaction, SpendableOutput
from ledger_deploy.publishing.retry import RetryHook, Sleep, as_publish_error, retry_with_backoff

logger = get_logger(__name__)


class SpendableOutputController:
    """Hands each publish job its own funded output.

    Every outpoint handed out is recorded in ``committed`` and is never handed
    out again during the run, whatever the indexer reports later.
    """

    def __init__(
        self,
        indexer: IndexerService,
        signer: TransactionSigner,
        fee_rate: float,
        retry: RetryPolicy | None = None,
        on_retry: RetryHook | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.indexer = indexer
        self.signer = signer
        self.fee_rate = fee_rate
        self.retry = retry or RetryPolicy()
        self._on_retry = on_retry
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._pool: dict[str, SpendableOutput] = {}
        self._leases: dict[str, SpendableOutput] = {}
        self.committed: set[str] = set()
        self.split_transactions: list[SignedTransaction] = []

    @property
    def available(self) -> list[SpendableOutput]:
        return sorted(self._pool.values(), key=lambda item: item.satoshis, reverse=True)

    async def refresh(self) -> None:
        """Merge the indexer's view of the funding address, skipping committed outputs."""
        try:
            outputs = await retry_with_backoff(
                lambda: self.indexer.list_unspent(self.signer.address),
                self.retry,
                label="list unspent outputs",
                on_retry=self._on_retry,
                sleep=self._sleep,
            )
        except PublishError:
            raise
        except Exception as exc:
            raise as_publish_error(exc, "Listing spendable outputs failed") from exc
        async with self._lock:
            leased = {item.outpoint for item in self._leases.values()}
            for output in outputs:
                if output.outpoint in self.committed or output.outpoint in leased:
                    continue
                self._pool.setdefault(output.outpoint, output)

    async def prepare(self, amounts: Mapping[str, int]) -> SignedTransaction | None:
        """Split funding into one output per job id; returns the split transaction.

        Jobs that already hold a lease are skipped, so a retried wave does not
        fund the same job twice.
        """
        pending = {job_id: amount for job_id, amount in amounts.items() if job_id not in self._leases}
        if not pending:
            return None

        job_ids = sorted(pending)
        values = [pending[job_id] for job_id in job_ids]
        inputs = await self._select_inputs(sum(values), len(values))

        try:
            tx = self.signer.build_split(inputs, values, self.fee_rate)
        except Exception:
            await self._release(inputs)
            raise
        try:
            await retry_with_backoff(
                lambda: self.indexer.broadcast(tx.raw_hex),
                self.retry,
                label="split transaction",
                on_retry=self._on_retry,
                sleep=self._sleep,
            )
        except PublishError:
            raise
        except Exception as exc:
            raise as_publish_error(exc, f"Broadcasting split transaction {tx.txid} failed") from exc
        async with self._lock:
            for job_id, output in zip(job_ids, tx.outputs):
                self.committed.add(output.outpoint)
                self._leases[job_id] = output
            for output in tx.outputs[len(job_ids):]:
                self._pool[output.outpoint] = output
            self.split_transactions.append(tx)
        logger.info("Split %s into %s publish outputs (txid %s)", len(inputs), len(job_ids), tx.txid)
        return tx

    async def lease(self, job_id: str, amount: int | None = None) -> SpendableOutput:
        """Return the output reserved for ``job_id``; the same job always gets the same output."""
        async with self._lock:
            leased = self._leases.get(job_id)
            if leased is not None:
                return leased
            if amount is None:
                raise InsufficientFundsError(f"No output prepared for job {job_id}")
            for output in self.available:
                if output.satoshis >= amount:
                    self._claim(output)
                    self._leases[job_id] = output
                    return output
        await self.refresh()
        async with self._lock:
            for output in self.available:
                if output.satoshis >= amount:
                    self._claim(output)
                    self._leases[job_id] = output
                    return output
        raise InsufficientFundsError(f"No spendable output holds {amount} sats for job {job_id}")

    async def settle(self, job_id: str, tx: SignedTransaction) -> None:
        """Record a broadcast publish; its change output becomes a seed candidate."""
        async with self._lock:
            self._leases.pop(job_id, None)
            for output in tx.outputs:
                if output.outpoint not in self.committed:
                    self._pool[output.outpoint] = output

    async def _select_inputs(self, total: int, output_count: int) -> list[SpendableOutput]:
        if not self._pool:
            await self.refresh()
        for attempt in range(2):
            async with self._lock:
                selected = self._pick(total, output_count)
                if selected is not None:
                    for output in selected:
                        self._claim(output)
                    return selected
                available = sum(item.satoshis for item in self._pool.values())
            if attempt == 0:
                await self.refresh()
        raise InsufficientFundsError(f"Insufficient funds: need {total} sats plus fees, {available} available")

    def _pick(self, total: int, output_count: int) -> list[SpendableOutput] | None:
        selected: list[SpendableOutput] = []
        gathered = 0
        for output in self.available:
            selected.append(output)
            gathered += output.satoshis
            fee = estimate_fee(split_transaction_size(len(selected), output_count + 1), self.fee_rate)
            if gathered >= total + fee + UTXO_FETCH_BUFFER:
                return selected
        return None

    def _claim(self, output: SpendableOutput) -> None:
        if output.outpoint in self.committed:
            raise RuntimeError(f"Output {output.outpoint} was already committed")
        self._pool.pop(output.outpoint, None)
        self.committed.add(output.outpoint)

    async def _release(self, outputs: list[SpendableOutput]) -> None:
        async with self._lock:
            for output in outputs:
                self.committed.discard(output.outpoint)
                self._pool[output.outpoint] = output


__all__ = ["SpendableOutputController"]

"""Wave execution: cache filtering, job fan-out, and result bookkeeping."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from ledger_deploy.caching.evaluator import CacheEvaluator
from ledger_deploy.chunking.chunker import create_chunk_manifest
from ledger_deploy.core.config import RetryPolicy
from ledger_deploy.core.errors import PublishError
from ledger_deploy.core.logging import get_logger, log_context
from ledger_deploy.core.progress import ProgressReporter
from ledger_deploy.ledger.indexer import IndexerService
from ledger_deploy.ledger.signer import INSCRIPTION_SATS, TransactionSigner, publish_cost
from ledger_deploy.models.records import ChunkManifest, ChunkReference, PublishedUnit
from ledger_deploy.publishing.jobs import PreparedTarget, PublishJob, PublishTarget, build_jobs
from ledger_deploy.publishing.outputs import SpendableOutputController
from ledger_deploy.publishing.retry import Sleep, as_publish_error, retry_with_backoff
from ledger_deploy.utils.ids import access_path

logger = get_logger(__name__)

PUBLISHED_VOUT = 0


@dataclass(slots=True)
class DeploymentState:
    """Run-wide results shared by every wave.

    ``settled_chunks`` holds the chunks already on the ledger for chunked
    units that failed partway, so an aborted run can hand them to the next one.
    """

    access_map: dict[str, str] = field(default_factory=dict)
    published: list[PublishedUnit] = field(default_factory=list)
    reused: list[PublishedUnit] = field(default_factory=list)
    transactions: list[str] = field(default_factory=list)
    chunk_manifests: dict[str, ChunkManifest] = field(default_factory=dict)
    settled_chunks: dict[str, ChunkManifest] = field(default_factory=dict)
    total_cost: int = 0
    total_size: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def record_reused(self, unit: PublishedUnit) -> None:
        self.reused.append(unit)
        self.access_map[unit.original_path] = unit.url_path
        if unit.chunk_manifest is not None:
            self.chunk_manifests[unit.original_path] = unit.chunk_manifest

    def record_published(self, unit: PublishedUnit) -> None:
        self.published.append(unit)
        self.access_map[unit.original_path] = unit.url_path
        self.total_size += unit.size
        self.settled_chunks.pop(unit.original_path, None)
        if unit.chunk_manifest is not None:
            self.chunk_manifests[unit.original_path] = unit.chunk_manifest

    def record_transaction(self, txid: str, cost: int) -> None:
        self.transactions.append(txid)
        self.total_cost += cost


@dataclass(slots=True, frozen=True)
class JobResult:
    job: PublishJob
    txid: str
    vout: int
    fee: int
    reused: bool = False


class PublishExecutor:
    """Publishes one wave at a time through the shared output controller."""

    def __init__(
        self,
        controller: SpendableOutputController,
        signer: TransactionSigner,
        indexer: IndexerService,
        *,
        fee_rate: float,
        retry: RetryPolicy | None = None,
        chunk_threshold: int,
        chunk_size: int,
        chunk_batch_size: int = 10,
        chunking_enabled: bool = True,
        entry_point: str = "index.html",
        settled_chunks: Mapping[str, ChunkManifest] | None = None,
        reporter: ProgressReporter | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.controller = controller
        self.signer = signer
        self.indexer = indexer
        self.fee_rate = fee_rate
        self.retry = retry or RetryPolicy()
        self.chunk_threshold = chunk_threshold
        self.chunk_size = chunk_size
        self.chunk_batch_size = chunk_batch_size
        self.chunking_enabled = chunking_enabled
        self.entry_point = entry_point
        self.settled_chunks = dict(settled_chunks or {})
        self.reporter = reporter or ProgressReporter()
        self._sleep = sleep

    async def run_wave(
        self,
        targets: Sequence[PublishTarget],
        state: DeploymentState,
        evaluator: CacheEvaluator | None = None,
        wave: int | None = None,
    ) -> list[PublishedUnit]:
        """Publish every target that cannot be reused; returns the new units.

        Raises the first job failure only after every job in the wave has
        settled, so successful publishes are already recorded in ``state``.
        """
        prepared: list[PreparedTarget] = []
        for target in targets:
            decision = (
                evaluator.evaluate(target.path, target.content_hash, target.dependencies, state.access_map)
                if evaluator is not None
                else None
            )
            if decision is not None and decision.reusable:
                unit = evaluator.reuse(decision)
                async with state.lock:
                    state.record_reused(unit)
                self.reporter.report_publish_skipped(target.path, unit.url_path, unit.chunk_count)
                continue
            dependency_hash = decision.dependency_hash if decision is not None else None
            prepared.append(
                build_jobs(
                    target,
                    target.render(state.access_map),
                    dependency_hash,
                    chunking_enabled=self.chunking_enabled,
                    chunk_threshold=self.chunk_threshold,
                    chunk_size=self.chunk_size,
                    entry_point=self.entry_point,
                )
            )
        if not prepared:
            return []

        amounts = {
            job.id: publish_cost(len(job.payload), self.fee_rate)
            for item in prepared
            for job in item.jobs
            if self._settled_result(job) is None
        }
        split = await self.controller.prepare(amounts)
        if split is not None:
            async with state.lock:
                state.record_transaction(split.txid, split.fee)

        semaphore = asyncio.Semaphore(self.chunk_batch_size)
        outcomes = await asyncio.gather(
            *(self._publish_target(item, state, semaphore, wave) for item in prepared),
            return_exceptions=True,
        )
        failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        if failures:
            logger.error(
                "%s of %s publishes failed in wave",
                len(failures),
                len(prepared),
                extra=log_context(wave=wave),
            )
            raise failures[0]
        return [outcome for outcome in outcomes if isinstance(outcome, PublishedUnit)]

    async def _publish_target(
        self,
        item: PreparedTarget,
        state: DeploymentState,
        semaphore: asyncio.Semaphore,
        wave: int | None,
    ) -> PublishedUnit:
        target = item.target
        self.reporter.report_publish_start(target.path)
        if item.is_chunked:
            unit = await self._publish_chunked(item, state, semaphore, wave)
        else:
            result = await self._run_job(item.jobs[0], state, wave)
            unit = PublishedUnit(
                original_path=target.path,
                txid=result.txid,
                vout=result.vout,
                url_path=access_path(result.txid, result.vout),
                size=len(item.payload),
                content_hash=target.content_hash,
                dependency_hash=item.dependency_hash,
            )
        async with state.lock:
            state.record_published(unit)
        logger.info(
            "Published %s at %s",
            target.path,
            unit.url_path,
            extra=log_context(wave=wave, path=target.path, txid=unit.txid),
        )
        self.reporter.report_publish_complete(target.path, unit.url_path)
        return unit

    async def _publish_chunked(
        self,
        item: PreparedTarget,
        state: DeploymentState,
        semaphore: asyncio.Semaphore,
        wave: int | None,
    ) -> PublishedUnit:
        async def bounded(job: PublishJob) -> JobResult:
            settled = self._settled_result(job)
            if settled is not None:
                return settled
            async with semaphore:
                return await self._run_job(job, state, wave)

        target = item.target
        outcomes = await asyncio.gather(*(bounded(job) for job in item.jobs), return_exceptions=True)
        results = sorted(
            (outcome for outcome in outcomes if isinstance(outcome, JobResult)),
            key=lambda result: result.job.chunk.index if result.job.chunk else 0,
        )
        reused = sum(1 for result in results if result.reused)
        if reused:
            logger.info(
                "Reused %s of %s chunks already on the ledger",
                reused,
                len(item.jobs),
                extra=log_context(wave=wave, path=target.path),
            )
        failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        if failures:
            if results:
                async with state.lock:
                    state.settled_chunks[target.path] = self._manifest(item, results)
            raise failures[0]

        manifest = self._manifest(item, results)
        head = results[0]
        logger.info(
            "Published %s as %s chunks",
            target.path,
            len(results),
            extra=log_context(wave=wave, path=target.path, txid=head.txid),
        )
        return PublishedUnit(
            original_path=target.path,
            txid=head.txid,
            vout=head.vout,
            url_path=access_path(head.txid, head.vout),
            size=len(item.payload),
            content_hash=target.content_hash,
            dependency_hash=item.dependency_hash,
            is_chunked=True,
            chunk_count=len(results),
            chunks=[
                ChunkReference(index=d.index, txid=d.txid, vout=d.vout, size=d.size) for d in manifest.chunks
            ],
            chunk_manifest=manifest,
        )

    def _manifest(self, item: PreparedTarget, results: Sequence[JobResult]) -> ChunkManifest:
        target = item.target
        return create_chunk_manifest(
            target.path,
            target.mime_type,
            len(item.payload),
            self.chunk_size,
            [(result.job.chunk, result.txid, result.vout) for result in results if result.job.chunk],
        )

    def _settled_result(self, job: PublishJob) -> JobResult | None:
        """A chunk with the same index, size and hash already on the ledger."""
        manifest = self.settled_chunks.get(job.path)
        if job.chunk is None or manifest is None:
            return None
        chunk = job.chunk
        for descriptor in manifest.chunks:
            if (descriptor.index, descriptor.size, descriptor.hash) == (chunk.index, chunk.size, chunk.hash):
                return JobResult(job=job, txid=descriptor.txid, vout=descriptor.vout, fee=0, reused=True)
        return None

    async def _run_job(self, job: PublishJob, state: DeploymentState, wave: int | None = None) -> JobResult:
        async def attempt() -> tuple[str, int]:
            # Fresh controller lookup on every attempt; the lease is stable per job.
            output = await self.controller.lease(job.id)
            tx = self.signer.build_publish(job.payload, job.content_type, output, self.fee_rate)
            txid = await self.indexer.broadcast(tx.raw_hex)
            await self.controller.settle(job.id, tx)
            return txid, tx.fee

        try:
            txid, fee = await retry_with_backoff(
                attempt,
                self.retry,
                label=f"publish {job.id}",
                on_retry=self.reporter.report_retry,
                sleep=self._sleep,
            )
        except Exception as exc:
            logger.error("Publish failed: %s", exc, extra=log_context(wave=wave, path=job.path, job=job.id))
            if isinstance(exc, PublishError):
                raise
            raise as_publish_error(exc, f"Publishing {job.id} failed") from exc
        async with state.lock:
            state.record_transaction(txid, fee + INSCRIPTION_SATS)
        logger.debug("Broadcast %s", job.id, extra=log_context(wave=wave, path=job.path, txid=txid))
        return JobResult(job=job, txid=txid, vout=PUBLISHED_VOUT, fee=fee)


__all__ = ["DeploymentState", "JobResult", "PublishExecutor"]

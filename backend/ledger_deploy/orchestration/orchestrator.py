"""Deployment orchestration: analysis, waves, publishing, and the history record."""

from __future__ import annotations

import asyncio
from pathlib import Path

from ledger_deploy.analysis.analyzer import analyze_build_directory
from ledger_deploy.analysis.mime import content_type_for
from ledger_deploy.analysis.types import BuildAnalysis, ContentUnit
from ledger_deploy.caching.evaluator import CacheEvaluator
from ledger_deploy.chunking.agent import AGENT_MIME_TYPE, AGENT_PATH, generate_reassembly_agent
from ledger_deploy.core.config import DeploymentConfig
from ledger_deploy.core.errors import CacheError, ConfigurationError, DeploymentAborted, PublishError
from ledger_deploy.core.logging import get_logger, log_context
from ledger_deploy.core.progress import ProgressReporter
from ledger_deploy.ledger.bsv_signer import FundingKeySigner
from ledger_deploy.ledger.indexer import IndexerService, create_indexer
from ledger_deploy.ledger.signer import SimulatedSigner, TransactionSigner
from ledger_deploy.models.records import (
    ChunkManifest,
    DeploymentHistory,
    DeploymentRecord,
    PublishedUnit,
    VersionEntry,
    cached_ref,
)
from ledger_deploy.orchestration.history import (
    append_record,
    load_history,
    previous_publish_map,
    save_history,
    set_aside,
    settled_chunk_map,
)
from ledger_deploy.publishing.executor import DeploymentState, PublishExecutor
from ledger_deploy.publishing.jobs import PublishTarget
from ledger_deploy.publishing.outputs import SpendableOutputController
from ledger_deploy.publishing.retry import Sleep
from ledger_deploy.rewriting.rewriter import ReferenceRewriter
from ledger_deploy.scheduling.waves import WaveSet, compute_waves
from ledger_deploy.utils.ids import outpoint_from_access_path
from ledger_deploy.utils.time import utc_iso
from ledger_deploy.utils.urls import is_entry_document
from ledger_deploy.versioning.store import HistoryVersionStore, VersionStore, ensure_unique_version

logger = get_logger(__name__)


class DeploymentOrchestrator:
    """Sequences one deployment end to end.

    Collaborators (signer, indexer, rewriter, version store) are injectable.
    Dry runs default to the simulated signer and indexer; live runs sign with
    the configured funding key.
    """

    def __init__(
        self,
        config: DeploymentConfig,
        *,
        signer: TransactionSigner | None = None,
        indexer: IndexerService | None = None,
        reporter: ProgressReporter | None = None,
        rewriter: ReferenceRewriter | None = None,
        version_store: VersionStore | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self.reporter = reporter or ProgressReporter()
        self.rewriter = rewriter or ReferenceRewriter()
        self._signer = signer
        self._indexer = indexer
        self.version_store = version_store
        self._sleep = sleep
        self._active: tuple[PublishExecutor, DeploymentState] | None = None
        self.analysis: BuildAnalysis | None = None

    # Public API -------------------------------------------------------

    async def deploy(self) -> DeploymentRecord:
        """Publish the build directory and append a record to the history file."""
        config = self.config
        config.validate_for_run()
        signer = self._resolve_signer()
        history = self._load_history()
        ensure_unique_version(history, config.version)

        self.reporter.report_analysis_start()
        analysis = analyze_build_directory(config.build_dir, self.rewriter.registry)
        self.analysis = analysis
        self.reporter.report_analysis_complete(len(analysis.units))
        entry_docs = {path for path in analysis.graph if is_entry_document(path, config.entry_point)}
        if config.entry_point not in analysis.graph:
            raise ConfigurationError(f"Entry point {config.entry_point} not found in {config.build_dir}")

        waves = compute_waves(analysis.graph, deferred=entry_docs)
        for members in waves.cycles:
            self.reporter.report_cycle(members)

        evaluator = CacheEvaluator(previous_publish_map(history))
        prior_agent = evaluator.previous.get(AGENT_PATH)
        cached, fresh = evaluator.preview(
            analysis.graph,
            waves.waves,
            extra_dependencies={path: (AGENT_PATH,) for path in entry_docs} if prior_agent else None,
            seed={AGENT_PATH: prior_agent.url_path} if prior_agent else None,
        )
        self.reporter.report_cache_analysis(len(cached), len(fresh), cached)

        indexer = self._resolve_indexer()
        executor = self._build_executor(signer, indexer, settled_chunk_map(history))
        state = DeploymentState()
        started = utc_iso()
        self._active = (executor, state)
        try:
            await self._publish_waves(analysis, waves, entry_docs, executor, evaluator, state)
            version_entry = await self._record_version(history, state)
        except (PublishError, OSError) as exc:
            logger.error(
                "Deployment %s aborted after %s publishes: %s",
                config.version,
                len(state.published),
                exc,
                extra=log_context(version=config.version),
            )
            record = self._build_record(started, state, signer, status="partial")
            self._save(history, record)
            raise DeploymentAborted(f"Deployment aborted: {exc}", partial_record=record) from exc
        finally:
            self._active = None

        record = self._build_record(started, state, signer, status="complete", version_entry=version_entry)
        self._save(history, record)
        self.reporter.report_deployment_complete(record.entry_point)
        logger.info(
            "Deployment %s complete: %s new, %s cached, %s transactions",
            config.version,
            record.new_files,
            record.cached_count,
            record.new_transactions,
            extra=log_context(version=config.version, entry_point=record.entry_point),
        )
        return record

    async def publish_single(self, file_path: Path, content_type: str | None = None) -> PublishedUnit:
        """Publish one file outside of any deployment history."""
        if not file_path.is_file():
            raise ConfigurationError(f"File not found: {file_path}")
        if not self.config.dry_run and not self.config.funding_key:
            raise ConfigurationError("A funding key is required unless running in dry-run mode")
        signer = self._resolve_signer()
        data = file_path.read_bytes()
        target = PublishTarget.from_bytes(
            file_path.name,
            data,
            content_type or content_type_for(file_path.name),
            chunkable=True,
        )
        executor = self._build_executor(signer, self._resolve_indexer())
        units = await executor.run_wave([target], DeploymentState())
        return units[0]

    async def publish_payload(self, path: str, data: bytes, mime_type: str) -> PublishedUnit:
        """Publish generated bytes through the running deployment's output controller.

        Transactions count towards the active deployment; the unit itself is not
        listed among the deployment's files.
        """
        target = PublishTarget.from_bytes(path, data, mime_type)
        scratch = DeploymentState()
        if self._active is None:
            executor = self._build_executor(self._resolve_signer(), self._resolve_indexer())
            return (await executor.run_wave([target], scratch))[0]
        executor, state = self._active
        units = await executor.run_wave([target], scratch)
        async with state.lock:
            for txid in scratch.transactions:
                state.transactions.append(txid)
            state.total_cost += scratch.total_cost
        return units[0]

    # Internal helpers -------------------------------------------------

    async def _publish_waves(
        self,
        analysis: BuildAnalysis,
        waves: WaveSet,
        entry_docs: set[str],
        executor: PublishExecutor,
        evaluator: CacheEvaluator,
        state: DeploymentState,
    ) -> None:
        agent_done = False
        total = len(waves.waves)
        for index, wave in enumerate(waves.waves):
            if not agent_done and waves.deferred_from is not None and index >= waves.deferred_from:
                await self._publish_agent(executor, evaluator, state)
                agent_done = True
            self.reporter.report_wave_start(index, total, wave)
            targets = [self._unit_target(analysis.unit(path), analysis, entry_docs, state) for path in wave]
            try:
                await executor.run_wave(targets, state, evaluator, wave=index)
            finally:
                for path in wave:
                    analysis.graph[path].published = path in state.access_map
        if not agent_done:
            await self._publish_agent(executor, evaluator, state)

    async def _publish_agent(
        self,
        executor: PublishExecutor,
        evaluator: CacheEvaluator,
        state: DeploymentState,
    ) -> None:
        if not state.chunk_manifests:
            return
        source = generate_reassembly_agent(state.chunk_manifests.values(), self.config.content_url)
        target = PublishTarget.from_bytes(AGENT_PATH, source.encode("utf-8"), AGENT_MIME_TYPE)
        self.reporter.report(f"Publishing reassembly agent for {len(state.chunk_manifests)} chunked files")
        await executor.run_wave([target], state, evaluator)

    def _unit_target(
        self,
        unit: ContentUnit,
        analysis: BuildAnalysis,
        entry_docs: set[str],
        state: DeploymentState,
    ) -> PublishTarget:
        dependencies = tuple(analysis.graph[unit.path].dependencies)
        is_entry = unit.path in entry_docs
        carries_agent = is_entry and AGENT_PATH in state.access_map
        if carries_agent:
            dependencies += (AGENT_PATH,)

        def render(access_map: dict[str, str]) -> bytes:
            agent_access_path = access_map.get(AGENT_PATH) if carries_agent else None
            data = unit.read_bytes()
            if not dependencies and agent_access_path is None:
                return data
            return self.rewriter.rewrite(unit.path, data, access_map, agent_access_path=agent_access_path)

        return PublishTarget(
            path=unit.path,
            content_hash=unit.content_hash,
            mime_type=unit.mime_type,
            render=render,
            dependencies=dependencies,
            chunkable=not is_entry,
        )

    async def _record_version(
        self,
        history: DeploymentHistory | None,
        state: DeploymentState,
    ) -> VersionEntry:
        store = self.version_store or HistoryVersionStore(history)
        origin = self.config.version_origin or (history.origin_versioning_inscription if history else None)
        previous = await store.fetch_latest(origin)
        entry = VersionEntry(
            version=self.config.version,
            description=self.config.version_description,
            entry_point=state.access_map.get(self.config.entry_point, ""),
            timestamp=utc_iso(),
            previous=(previous.outpoint or previous.version) if previous else None,
        )
        entry.outpoint = await store.append_entry(entry)
        return entry

    def _build_record(
        self,
        started: str,
        state: DeploymentState,
        signer: TransactionSigner,
        status: str,
        version_entry: VersionEntry | None = None,
    ) -> DeploymentRecord:
        config = self.config
        return DeploymentRecord(
            timestamp=started,
            entry_point=state.access_map.get(config.entry_point, ""),
            files=list(state.published),
            cached_files=[cached_ref(unit.original_path, unit.outpoint) for unit in state.reused],
            total_files=len(state.published) + len(state.reused),
            total_cost=state.total_cost,
            total_size=state.total_size,
            transactions=list(state.transactions),
            version=config.version,
            version_description=config.version_description or None,
            build_dir=str(config.build_dir),
            destination_address=signer.address,
            content_url=config.content_url,
            new_files=len(state.published),
            cached_count=len(state.reused),
            new_transactions=len(state.transactions),
            status=status,
            latest_version_entry=version_entry,
            chunk_manifests=sorted(state.chunk_manifests.values(), key=lambda manifest: manifest.original_path),
            settled_chunks=sorted(state.settled_chunks.values(), key=lambda manifest: manifest.original_path),
        )

    def _save(self, history: DeploymentHistory | None, record: DeploymentRecord) -> None:
        history = append_record(history, record, self.config.project_name)
        if history.origin_versioning_inscription is None and record.status == "complete":
            entry = record.latest_version_entry
            history.origin_versioning_inscription = (
                self.config.version_origin
                or (entry.outpoint if entry and entry.outpoint else None)
                or outpoint_from_access_path(record.entry_point)
                or None
            )
        save_history(self.config.manifest_path, history)
        logger.info("Saved deployment history to %s", self.config.manifest_path)

    def _load_history(self) -> DeploymentHistory | None:
        try:
            return load_history(self.config.manifest_path)
        except CacheError as exc:
            logger.warning("Ignoring previous deployments: %s", exc)
            set_aside(self.config.manifest_path)
            return None

    def _resolve_signer(self) -> TransactionSigner:
        if self._signer is not None:
            return self._signer
        if self.config.dry_run:
            self._signer = SimulatedSigner(self.config.funding_key or "dry-run")
            return self._signer
        if not self.config.funding_key:
            raise ConfigurationError("A funding key is required unless running in dry-run mode")
        self._signer = FundingKeySigner(self.config.funding_key)
        return self._signer

    def _resolve_indexer(self) -> IndexerService:
        if self._indexer is None:
            self._indexer = create_indexer(
                self.config.protocol,
                self.config.indexer_url,
                dry_run=self.config.dry_run,
                dry_run_delay=self.config.dry_run_delay,
            )
        return self._indexer

    def _build_executor(
        self,
        signer: TransactionSigner,
        indexer: IndexerService,
        settled_chunks: dict[str, ChunkManifest] | None = None,
    ) -> PublishExecutor:
        config = self.config
        controller = SpendableOutputController(
            indexer,
            signer,
            config.fee_rate,
            retry=config.retry,
            on_retry=self.reporter.report_retry,
            sleep=self._sleep,
        )
        return PublishExecutor(
            controller,
            signer,
            indexer,
            fee_rate=config.fee_rate,
            retry=config.retry,
            chunk_threshold=config.chunk_threshold,
            chunk_size=config.chunk_size,
            chunk_batch_size=config.chunk_batch_size,
            chunking_enabled=config.chunking_enabled,
            entry_point=config.entry_point,
            settled_chunks=settled_chunks,
            reporter=self.reporter,
            sleep=self._sleep,
        )


__all__ = ["DeploymentOrchestrator"]

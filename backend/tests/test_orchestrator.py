"""End-to-end deployment tests against the dry-run ledger."""

from __future__ import annotations

from pathlib import Path

import orjson
import pytest
from bsv import PrivateKey

from ledger_deploy.analysis.mime import content_type_for
from ledger_deploy.chunking.agent import AGENT_PATH
from ledger_deploy.core.errors import ConfigurationError, DeploymentAborted, VersionConflictError
from ledger_deploy.ledger.bsv_signer import inscription_envelope
from ledger_deploy.ledger.indexer import DryRunIndexer
from ledger_deploy.orchestration.history import load_history
from ledger_deploy.orchestration.orchestrator import DeploymentOrchestrator
from ledger_deploy.utils.hashing import sha256_bytes
from ledger_deploy.versioning.store import LedgerVersionStore


class ConflictingIndexer(DryRunIndexer):
    """Rejects every HTML publish as a double spend."""

    async def broadcast(self, raw_hex: str) -> str:
        if b"text/html" in bytes.fromhex(raw_hex):
            raise Exception("txn-mempool-conflict")
        return await super().broadcast(raw_hex)


class PoisonedChunkIndexer(DryRunIndexer):
    """Rejects the publish of one chunk payload as a double spend."""

    def __init__(self, chunk: bytes) -> None:
        super().__init__(delay=0)
        self.marker = sha256_bytes(chunk).encode()

    async def broadcast(self, raw_hex: str) -> str:
        if self.marker in bytes.fromhex(raw_hex):
            raise Exception("bad-txns-inputs-spent")
        return await super().broadcast(raw_hex)


class UnusedSession:
    def get(self, *args, **kwargs):  # pragma: no cover - must not be reached
        raise AssertionError("no lookup expected without an origin")


async def _deploy(config, **kwargs):
    return await DeploymentOrchestrator(config, **kwargs).deploy()


@pytest.mark.asyncio
async def test_redeploy_without_changes_is_free(sample_build: Path, config_factory, recording_sleep, reporter) -> None:
    first = await _deploy(config_factory(sample_build), sleep=recording_sleep)

    assert first.status == "complete"
    assert first.new_files == 3
    assert first.cached_count == 0
    assert first.new_transactions > 3
    assert first.entry_point.startswith("/content/")

    config = config_factory(sample_build, version="1.0.1")
    second = await _deploy(config, sleep=recording_sleep, reporter=reporter)

    assert second.new_transactions == 0
    assert second.new_files == 0
    assert second.cached_count == 3
    assert second.total_cost == 0
    assert second.entry_point == first.entry_point
    assert reporter.cache_summary == (3, 0)
    assert sorted(reporter.skipped) == ["index.html", "logo.png", "styles.css"]

    history = load_history(config.manifest_path)
    assert history.total_deployments == 2
    assert history.versions == ["1.0.0", "1.0.1"]
    assert history.origin_versioning_inscription == first.entry_point.rsplit("/", 1)[-1]
    assert second.latest_version_entry.previous == "1.0.0"


@pytest.mark.asyncio
async def test_changed_asset_republishes_its_dependents(tmp_path: Path, config_factory, reporter) -> None:
    build = tmp_path / "site"
    build.mkdir()
    (build / "index.html").write_text('<link href="styles.css"><script src="app.js"></script>')
    (build / "styles.css").write_text(".hero { background: url(logo.png); }")
    (build / "app.js").write_text("console.log('hi');")
    (build / "logo.png").write_bytes(b"logo-v1")

    first = await _deploy(config_factory(build))
    (build / "logo.png").write_bytes(b"logo-v2")
    second = await _deploy(config_factory(build, version="1.0.1"), reporter=reporter)

    assert sorted(unit.original_path for unit in second.files) == ["index.html", "logo.png", "styles.css"]
    assert len(second.cached_files) == 1
    assert second.cached_files[0].startswith("app.js::*::")
    assert reporter.cache_summary == (1, 3)
    assert second.entry_point != first.entry_point


@pytest.mark.asyncio
async def test_duplicate_version_is_rejected(sample_build: Path, config_factory) -> None:
    config = config_factory(sample_build)
    await _deploy(config)

    with pytest.raises(VersionConflictError) as excinfo:
        await _deploy(config)

    assert excinfo.value.suggestion == "1.0.1"
    assert load_history(config.manifest_path).total_deployments == 1


@pytest.mark.asyncio
async def test_large_media_is_chunked_with_reassembly_agent(tmp_path: Path, config_factory) -> None:
    build = tmp_path / "site"
    build.mkdir()
    padding = "<!--" + "x" * 2000 + "-->"
    (build / "index.html").write_text(f"<html><head></head><body>{padding}<video src=\"clip.mp4\"></video></body></html>")
    (build / "clip.mp4").write_bytes(bytes(range(256)) * 12)
    config = config_factory(build, chunk_threshold=1000, chunk_size=1024)

    first = await _deploy(config)

    files = {unit.original_path: unit for unit in first.files}
    assert set(files) == {"clip.mp4", "index.html", AGENT_PATH}
    clip = files["clip.mp4"]
    assert clip.is_chunked
    assert clip.chunk_count == 3
    assert [chunk.size for chunk in clip.chunk_manifest.chunks] == [1024, 1024, 1024]
    assert clip.url_path == clip.chunk_manifest.chunks[0].url_path
    assert not files["index.html"].is_chunked
    assert [manifest.original_path for manifest in first.chunk_manifests] == ["clip.mp4"]

    second = await _deploy(config_factory(build, chunk_threshold=1000, chunk_size=1024, version="1.0.1"))
    assert second.new_transactions == 0
    assert second.cached_count == 3
    assert [manifest.original_path for manifest in second.chunk_manifests] == ["clip.mp4"]


@pytest.mark.asyncio
async def test_fatal_conflict_saves_partial_record_and_resumes(
    sample_build: Path, config_factory, recording_sleep
) -> None:
    config = config_factory(sample_build)
    orchestrator = DeploymentOrchestrator(config, indexer=ConflictingIndexer(delay=0), sleep=recording_sleep)

    with pytest.raises(DeploymentAborted) as excinfo:
        await orchestrator.deploy()

    published = {path: node.published for path, node in orchestrator.analysis.graph.items()}
    assert published == {"index.html": False, "logo.png": True, "styles.css": True}

    partial = excinfo.value.partial_record
    assert partial.status == "partial"
    assert sorted(unit.original_path for unit in partial.files) == ["logo.png", "styles.css"]
    assert recording_sleep.delays == []
    history = load_history(config.manifest_path)
    assert [record.status for record in history.deployments] == ["partial"]
    assert history.origin_versioning_inscription is None

    resumed = await _deploy(config)
    assert resumed.status == "complete"
    assert resumed.cached_count == 2
    assert [unit.original_path for unit in resumed.files] == ["index.html"]


@pytest.mark.asyncio
async def test_live_deploy_needs_a_valid_funding_key(sample_build: Path, config_factory) -> None:
    with pytest.raises(ConfigurationError, match="funding key"):
        await _deploy(config_factory(sample_build, dry_run=False))

    with pytest.raises(ConfigurationError, match="Invalid funding key"):
        await _deploy(config_factory(sample_build, dry_run=False, funding_key="not-a-key"))

    assert not (sample_build.parent / "deployment-history.json").exists()


@pytest.mark.asyncio
async def test_live_publish_signs_with_funding_key(tmp_path: Path, config_factory) -> None:
    page = tmp_path / "hello.html"
    page.write_text("<p>hello</p>")
    indexer = DryRunIndexer(delay=0)
    config = config_factory(tmp_path, dry_run=False, funding_key=PrivateKey().wif())

    unit = await DeploymentOrchestrator(config, indexer=indexer).publish_single(page)

    raw = bytes.fromhex(await indexer.get_transaction(unit.txid))
    assert inscription_envelope(b"<p>hello</p>", content_type_for("hello.html")) in raw
    assert len(indexer.broadcasts) == 2


@pytest.mark.asyncio
async def test_missing_entry_point_is_rejected(tmp_path: Path, config_factory) -> None:
    build = tmp_path / "site"
    build.mkdir()
    (build / "app.js").write_text("1")

    with pytest.raises(ConfigurationError, match="Entry point"):
        await _deploy(config_factory(build))


@pytest.mark.asyncio
async def test_malformed_history_is_set_aside(sample_build: Path, config_factory) -> None:
    config = config_factory(sample_build)
    config.manifest_path.write_text("{not json")

    record = await _deploy(config)

    assert record.new_files == 3
    assert config.manifest_path.with_name(config.manifest_path.name + ".malformed").exists()
    assert load_history(config.manifest_path).total_deployments == 1


@pytest.mark.asyncio
async def test_reference_cycle_is_reported(tmp_path: Path, config_factory, reporter) -> None:
    build = tmp_path / "site"
    build.mkdir()
    (build / "index.html").write_text('<script src="a.js"></script>')
    (build / "a.js").write_text('import "./b.js";')
    (build / "b.js").write_text('import("./a.js");')

    record = await _deploy(config_factory(build), reporter=reporter)

    assert record.new_files == 3
    assert reporter.cycles == [["a.js", "b.js"]]


@pytest.mark.asyncio
async def test_ledger_version_store_records_entry(sample_build: Path, config_factory) -> None:
    config = config_factory(sample_build)
    orchestrator = DeploymentOrchestrator(config)
    orchestrator.version_store = LedgerVersionStore(
        orchestrator.publish_payload, config.content_url, session=UnusedSession()
    )

    record = await orchestrator.deploy()

    entry = record.latest_version_entry
    assert entry.outpoint is not None
    assert entry.entry_point == record.entry_point
    assert "version.json" not in {unit.original_path for unit in record.files}
    assert entry.outpoint.split("_")[0] in record.transactions
    history = orjson.loads(config.manifest_path.read_bytes())
    assert history["originVersioningInscription"] == entry.outpoint


@pytest.mark.asyncio
async def test_publish_single_file(tmp_path: Path, config_factory) -> None:
    target = tmp_path / "note.txt"
    target.write_text("hello ledger")
    orchestrator = DeploymentOrchestrator(config_factory(tmp_path))

    unit = await orchestrator.publish_single(target)

    assert unit.original_path == "note.txt"
    assert unit.url_path == f"/content/{unit.txid}_0"
    with pytest.raises(ConfigurationError):
        await orchestrator.publish_single(tmp_path / "missing.txt")


@pytest.mark.asyncio
async def test_resume_reuses_chunks_settled_before_abort(tmp_path: Path, config_factory) -> None:
    build = tmp_path / "site"
    build.mkdir()
    (build / "index.html").write_text('<a href="big.bin">download</a>')
    (build / "big.bin").write_bytes(b"a" * 1024 + b"b" * 1024 + b"c" * 1024)
    config = config_factory(build, chunk_threshold=1000, chunk_size=1024)

    with pytest.raises(DeploymentAborted) as excinfo:
        await _deploy(config, indexer=PoisonedChunkIndexer(b"c" * 1024))

    partial = excinfo.value.partial_record
    assert partial.files == []
    [settled] = partial.settled_chunks
    assert settled.original_path == "big.bin"
    assert [chunk.index for chunk in settled.chunks] == [0, 1]

    indexer = DryRunIndexer(delay=0)
    resumed = await _deploy(config, indexer=indexer)

    big = next(unit for unit in resumed.files if unit.original_path == "big.bin")
    assert [chunk.txid for chunk in big.chunk_manifest.chunks[:2]] == [chunk.txid for chunk in settled.chunks]
    raws = [bytes.fromhex(await indexer.get_transaction(txid)) for txid in resumed.transactions]
    for payload, expected in ((b"a" * 1024, 0), (b"b" * 1024, 0), (b"c" * 1024, 1)):
        marker = sha256_bytes(payload).encode()
        assert sum(marker in raw for raw in raws) == expected
    assert resumed.settled_chunks == []

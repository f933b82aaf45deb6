"""Publish executor tests: wave settlement, retries, chunk fan-out and reuse."""

from __future__ import annotations

import logging
from collections import Counter

import orjson
import pytest

from ledger_deploy.caching.evaluator import CacheEvaluator
from ledger_deploy.chunking.chunker import create_chunk_manifest, split_into_chunks
from ledger_deploy.core.config import RetryPolicy
from ledger_deploy.core.errors import ErrorKind, PublishError
from ledger_deploy.ledger.indexer import DryRunIndexer
from ledger_deploy.ledger.signer import SimulatedSigner, publish_cost
from ledger_deploy.models.records import PublishedUnit
from ledger_deploy.publishing.executor import DeploymentState, PublishExecutor
from ledger_deploy.publishing.jobs import PublishTarget
from ledger_deploy.publishing.outputs import SpendableOutputController
from ledger_deploy.utils.hashing import sha256_bytes

CHUNK_SIZE = 256
MOVIE = b"".join(bytes([value]) * CHUNK_SIZE for value in range(5))[:1_200]


class ScriptedIndexer(DryRunIndexer):
    """Dry-run indexer that rejects marked payloads and can lag once per transaction."""

    def __init__(self, poisoned: bytes | None = None, lag_once: bool = False) -> None:
        super().__init__(delay=0)
        self.marker = sha256_bytes(poisoned).encode() if poisoned is not None else None
        self.lag_once = lag_once
        self.attempts: Counter[str] = Counter()

    async def broadcast(self, raw_hex: str) -> str:
        self.attempts[raw_hex] += 1
        if self.marker is not None and self.marker in bytes.fromhex(raw_hex):
            raise Exception("double spend detected")
        if self.lag_once and self.attempts[raw_hex] == 1:
            raise Exception("utxo not found")
        return await super().broadcast(raw_hex)

    def attempts_for(self, payload: bytes) -> list[int]:
        marker = sha256_bytes(payload).encode()
        return [count for raw, count in self.attempts.items() if marker in bytes.fromhex(raw)]


def _executor(indexer, sleep, reporter=None, **kwargs) -> PublishExecutor:
    signer = SimulatedSigner("executor-test")
    policy = RetryPolicy(initial_delay=1)
    on_retry = reporter.report_retry if reporter is not None else None
    controller = SpendableOutputController(indexer, signer, 1.0, retry=policy, on_retry=on_retry, sleep=sleep)
    return PublishExecutor(
        controller,
        signer,
        indexer,
        fee_rate=1.0,
        retry=policy,
        chunk_threshold=1_000,
        chunk_size=CHUNK_SIZE,
        reporter=reporter,
        sleep=sleep,
        **kwargs,
    )


def _script(path: str, body: bytes) -> PublishTarget:
    return PublishTarget.from_bytes(path, body, "application/javascript")


def _movie() -> PublishTarget:
    return PublishTarget.from_bytes("movie.bin", MOVIE, "application/octet-stream", chunkable=True)


async def _spent_inputs(indexer: DryRunIndexer, txids: list[str]) -> list[str]:
    spent: list[str] = []
    for txid in txids:
        description = orjson.loads(bytes.fromhex(await indexer.get_transaction(txid)))
        spent.extend(description["inputs"] if description["kind"] == "split" else [description["input"]])
    return spent


@pytest.mark.asyncio
async def test_sibling_is_recorded_before_conflict_is_raised(recording_sleep) -> None:
    indexer = ScriptedIndexer(poisoned=b"broken()")
    executor = _executor(indexer, recording_sleep)
    state = DeploymentState()

    with pytest.raises(PublishError) as excinfo:
        await executor.run_wave([_script("good.js", b"ok()"), _script("bad.js", b"broken()")], state, wave=0)

    assert excinfo.value.kind is ErrorKind.CONFLICT
    [unit] = state.published
    assert unit.original_path == "good.js"
    assert unit.txid in state.transactions
    assert state.access_map == {"good.js": unit.url_path}
    assert len(state.transactions) == 2
    assert indexer.attempts_for(b"broken()") == [1]
    assert recording_sleep.delays == []


@pytest.mark.asyncio
async def test_lagging_indexer_is_retried_without_reusing_inputs(recording_sleep, reporter) -> None:
    indexer = ScriptedIndexer(lag_once=True)
    executor = _executor(indexer, recording_sleep, reporter=reporter, chunk_batch_size=2)
    state = DeploymentState()
    scripts = [_script(f"asset-{index}.js", f"load({index})".encode()) for index in range(3)]

    units = await executor.run_wave([*scripts, _movie()], state)

    assert len(units) == 4
    assert len(state.transactions) == 1 + 3 + 5
    assert recording_sleep.delays == [1.0] * len(state.transactions)
    assert len(reporter.retries) == len(state.transactions)
    spent = await _spent_inputs(indexer, state.transactions)
    assert len(spent) == len(set(spent)) == len(state.transactions)

    movie = next(unit for unit in units if unit.original_path == "movie.bin")
    assert movie.is_chunked and movie.chunk_count == 5
    assert [chunk.index for chunk in movie.chunk_manifest.chunks] == [0, 1, 2, 3, 4]
    payloads = [f"load({index})".encode() for index in range(3)] + [
        chunk.data for chunk in split_into_chunks(MOVIE, CHUNK_SIZE)
    ]
    split_fee = executor.controller.split_transactions[0].fee
    assert state.total_cost == split_fee + sum(publish_cost(len(payload), 1.0) for payload in payloads)
    assert state.total_size == sum(len(payload) for payload in payloads)


@pytest.mark.asyncio
async def test_reused_unit_costs_nothing(recording_sleep) -> None:
    indexer = ScriptedIndexer()
    executor = _executor(indexer, recording_sleep)
    state = DeploymentState()
    body = b"cached()"
    previous = PublishedUnit(
        original_path="cached.js",
        txid="cc" * 32,
        vout=0,
        url_path=f"/content/{'cc' * 32}_0",
        size=len(body),
        content_hash=sha256_bytes(body),
    )

    units = await executor.run_wave([_script("cached.js", body)], state, CacheEvaluator({"cached.js": previous}))

    assert units == []
    assert state.transactions == [] and state.total_cost == 0
    assert state.reused[0].cached
    assert state.access_map == {"cached.js": previous.url_path}
    assert indexer.broadcasts == []


@pytest.mark.asyncio
async def test_failed_chunk_keeps_settled_siblings(recording_sleep) -> None:
    chunks = split_into_chunks(MOVIE, CHUNK_SIZE)
    indexer = ScriptedIndexer(poisoned=chunks[3].data)
    executor = _executor(indexer, recording_sleep)
    state = DeploymentState()

    with pytest.raises(PublishError):
        await executor.run_wave([_movie()], state)

    assert state.published == []
    settled = state.settled_chunks["movie.bin"]
    assert [chunk.index for chunk in settled.chunks] == [0, 1, 2, 4]
    assert {chunk.txid for chunk in settled.chunks} <= set(state.transactions)


@pytest.mark.asyncio
async def test_settled_chunks_are_not_published_again(recording_sleep) -> None:
    chunks = split_into_chunks(MOVIE, CHUNK_SIZE)
    settled = create_chunk_manifest(
        "movie.bin",
        "application/octet-stream",
        len(MOVIE),
        CHUNK_SIZE,
        [(chunks[0], "01" * 32, 0), (chunks[1], "02" * 32, 0)],
    )
    indexer = ScriptedIndexer()
    executor = _executor(indexer, recording_sleep, settled_chunks={"movie.bin": settled})
    state = DeploymentState()

    [movie] = await executor.run_wave([_movie()], state)

    assert [chunk.txid for chunk in movie.chunk_manifest.chunks[:2]] == ["01" * 32, "02" * 32]
    assert movie.url_path == f"/content/{'01' * 32}_0"
    assert len(state.transactions) == 1 + 3
    assert len(executor.controller.split_transactions[0].outputs) == 3 + 1
    assert indexer.attempts_for(chunks[0].data) == []
    assert state.settled_chunks == {}


@pytest.mark.asyncio
async def test_publish_logs_carry_wave_context(recording_sleep, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="ledger_deploy")
    executor = _executor(ScriptedIndexer(), recording_sleep)

    [unit] = await executor.run_wave([_script("app.js", b"run()")], DeploymentState(), wave=3)

    [record] = [record for record in caplog.records if record.getMessage().startswith("Published app.js")]
    assert (record.ctx_wave, record.ctx_path, record.ctx_txid) == (3, "app.js", unit.txid)

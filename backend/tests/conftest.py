"""Test fixtures for ledger-deploy."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from ledger_deploy.core.config import DeploymentConfig, RetryPolicy  # noqa: E402
from ledger_deploy.core.progress import ProgressReporter  # noqa: E402


@pytest.fixture(autouse=True)
def reset_state(monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset cached settings and LDEP_ environment between tests."""
    from ledger_deploy.core import config

    for key in list(os.environ):
        if key.startswith(config.ENV_PREFIX):
            monkeypatch.delenv(key, raising=False)
    config.get_settings.cache_clear()
    yield
    config.get_settings.cache_clear()


class RecordingSleep:
    """Async sleep replacement that only records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class RecordingReporter(ProgressReporter):
    def __init__(self) -> None:
        super().__init__(
            on_cache_analysis=self._cache,
            on_cycle_detected=self._cycle,
            on_publish_complete=self._published,
            on_publish_skipped=self._skipped,
            on_retry=self._retry,
        )
        self.cache_summary: tuple[int, int] | None = None
        self.cycles: list[list[str]] = []
        self.published: list[str] = []
        self.skipped: list[str] = []
        self.retries: list[tuple[str, int, float]] = []

    def _cache(self, cached: int, new: int, _paths) -> None:
        self.cache_summary = (cached, new)

    def _cycle(self, members) -> None:
        self.cycles.append(list(members))

    def _published(self, path: str, _url: str) -> None:
        self.published.append(path)

    def _skipped(self, path: str, _url: str, _chunks) -> None:
        self.skipped.append(path)

    def _retry(self, label: str, attempt: int, delay: float, _reason: str) -> None:
        self.retries.append((label, attempt, delay))


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def sample_build(tmp_path: Path) -> Path:
    """index.html -> styles.css -> logo.png, with index.html also using logo.png."""
    build = tmp_path / "dist"
    build.mkdir()
    (build / "index.html").write_text(
        '<html><head><link rel="stylesheet" href="styles.css"></head>'
        '<body><img src="logo.png"></body></html>'
    )
    (build / "styles.css").write_text('body { background: url("logo.png"); }')
    (build / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n" + bytes(range(64)))
    return build


def make_config(build_dir: Path, **overrides) -> DeploymentConfig:
    """Dry-run config with instant retries and the history file kept outside the build."""
    data = {
        "build_dir": build_dir,
        "dry_run": True,
        "dry_run_delay": 0,
        "version": "1.0.0",
        "manifest_path": build_dir.parent / "deployment-history.json",
        "retry": RetryPolicy(initial_delay=0),
    }
    data.update(overrides)
    return DeploymentConfig(**data)


@pytest.fixture
def config_factory():
    return make_config

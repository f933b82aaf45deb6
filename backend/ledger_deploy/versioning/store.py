"""Version metadata stores."""

from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

import requests
from pydantic import ValidationError

from ledger_deploy.core.errors import VersionConflictError
from ledger_deploy.core.logging import get_logger
from ledger_deploy.models.records import DeploymentHistory, PublishedUnit, VersionEntry

logger = get_logger(__name__)

VERSION_ENTRY_PATH = "version.json"
VERSION_ENTRY_MIME = "application/json"

PublishPayload = Callable[[str, bytes, str], Awaitable[PublishedUnit]]

_TRAILING_NUMBER_RE = re.compile(r"(\d+)(?!.*\d)")


def suggest_next_version(version: str) -> str:
    """Bump the last numeric component: ``1.0.0 -> 1.0.1``, ``v2 -> v3``."""
    match = _TRAILING_NUMBER_RE.search(version)
    if not match:
        return f"{version}.1"
    bumped = str(int(match.group(1)) + 1)
    return version[: match.start()] + bumped + version[match.end() :]


def ensure_unique_version(history: DeploymentHistory | None, version: str) -> None:
    """Raise ``VersionConflictError`` when ``version`` was already deployed."""
    if history is None:
        return
    existing = history.versions
    if version not in existing:
        return
    suggestion = suggest_next_version(version)
    while suggestion in existing:
        suggestion = suggest_next_version(suggestion)
    raise VersionConflictError(version, existing, suggestion)


class VersionStore(ABC):
    """Append-only store of version entries, keyed by an origin identifier."""

    @abstractmethod
    async def append_entry(self, entry: VersionEntry) -> str | None:
        """Persist ``entry``; returns its outpoint when the store issues a transaction."""

    @abstractmethod
    async def fetch_latest(self, origin: str | None) -> VersionEntry | None:
        """Return the newest entry for ``origin``."""


class HistoryVersionStore(VersionStore):
    """Keeps entries as plain tagged records in the deployment history file."""

    def __init__(self, history: DeploymentHistory | None = None) -> None:
        self.history = history

    async def append_entry(self, entry: VersionEntry) -> str | None:
        # The orchestrator stores the entry on the deployment record itself.
        return None

    async def fetch_latest(self, origin: str | None) -> VersionEntry | None:
        if self.history is None:
            return None
        for record in reversed(self.history.deployments):
            if record.latest_version_entry is not None:
                return record.latest_version_entry
        return None


class LedgerVersionStore(VersionStore):
    """Publishes each entry as a small JSON ledger entry chained to the previous one."""

    def __init__(
        self,
        publish: PublishPayload,
        content_url: str,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._publish = publish
        self.content_url = content_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    async def append_entry(self, entry: VersionEntry) -> str | None:
        unit = await self._publish(VERSION_ENTRY_PATH, entry.to_json(), VERSION_ENTRY_MIME)
        logger.info("Recorded version %s at %s", entry.version, unit.outpoint)
        return unit.outpoint

    async def fetch_latest(self, origin: str | None) -> VersionEntry | None:
        if not origin:
            return None
        return await asyncio.to_thread(self._fetch_latest, origin)

    def _fetch_latest(self, origin: str) -> VersionEntry | None:
        url = f"{self.content_url}/content/{origin}:-1"
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            return VersionEntry.model_validate(response.json())
        except (requests.RequestException, ValueError, ValidationError) as exc:
            logger.warning("Could not fetch latest version entry from %s: %s", url, exc)
            return None


__all__ = [
    "HistoryVersionStore",
    "LedgerVersionStore",
    "VersionStore",
    "ensure_unique_version",
    "suggest_next_version",
]

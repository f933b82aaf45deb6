"""Ledger indexer service interface and provider selection."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from ledger_deploy.core.config import KNOWN_PROTOCOLS
from ledger_deploy.core.errors import ConfigurationError
from ledger_deploy.core.logging import get_logger
from ledger_deploy.ledger.types import SpendableOutput
from ledger_deploy.utils.hashing import sha256_bytes, sha256_text

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]

DRY_RUN_FUNDING_SATS = 100_000_000


class IndexerService(ABC):
    """The three capabilities the deployment pipeline needs from an indexer."""

    @abstractmethod
    async def broadcast(self, raw_hex: str) -> str:
        """Submit a signed transaction and return its txid."""

    @abstractmethod
    async def list_unspent(self, address: str) -> list[SpendableOutput]:
        """Return spendable (more than 1 sat) outputs owned by ``address``."""

    @abstractmethod
    async def get_transaction(self, txid: str) -> str:
        """Return the raw transaction hex for ``txid``."""


class DryRunIndexer(IndexerService):
    """Fabricates results after an artificial delay; nothing leaves the process."""

    def __init__(
        self,
        delay: float = 0.1,
        funding_sats: int = DRY_RUN_FUNDING_SATS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.delay = delay
        self.funding_sats = funding_sats
        self._sleep = sleep
        self.broadcasts: list[str] = []
        self._transactions: dict[str, str] = {}

    async def broadcast(self, raw_hex: str) -> str:
        await self._sleep(self.delay)
        txid = sha256_bytes(bytes.fromhex(raw_hex))
        self.broadcasts.append(txid)
        self._transactions[txid] = raw_hex
        return txid

    async def list_unspent(self, address: str) -> list[SpendableOutput]:
        await self._sleep(self.delay)
        return [
            SpendableOutput(
                txid=sha256_text(f"dry-run-funding:{address}"),
                vout=0,
                satoshis=self.funding_sats,
            )
        ]

    async def get_transaction(self, txid: str) -> str:
        await self._sleep(self.delay)
        return self._transactions.get(txid, "")


def create_indexer(protocol: str, url: str, dry_run: bool = False, dry_run_delay: float = 0.1) -> IndexerService:
    """Select the indexer provider for ``protocol``."""
    if protocol not in KNOWN_PROTOCOLS:
        raise ConfigurationError(f"Unknown indexer protocol '{protocol}'")
    if dry_run:
        logger.info("Dry run: using simulated indexer")
        return DryRunIndexer(delay=dry_run_delay)
    from ledger_deploy.ledger.gorilla_pool import GorillaPoolIndexer

    return GorillaPoolIndexer(url)


__all__ = ["DryRunIndexer", "IndexerService", "create_indexer"]

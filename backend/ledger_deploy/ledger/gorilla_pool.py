"""GorillaPool / 1Sat Ordinals indexer client."""

from __future__ import annotations

import asyncio
from typing import Any

import requests

from ledger_deploy.core.config import DEFAULT_INDEXER_URL
from ledger_deploy.core.errors import PublishError, TransientPublishError, classify_error
from ledger_deploy.core.logging import get_logger
from ledger_deploy.ledger.indexer import IndexerService
from ledger_deploy.ledger.types import SpendableOutput
from ledger_deploy.utils.ids import parse_outpoint

logger = get_logger(__name__)

PAGE_LIMIT = 100


class GorillaPoolIndexer(IndexerService):
    """Blocking ``requests`` calls run in worker threads."""

    def __init__(
        self,
        base_url: str = DEFAULT_INDEXER_URL,
        session: requests.Session | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    async def broadcast(self, raw_hex: str) -> str:
        response = await asyncio.to_thread(
            self._request,
            "POST",
            "/v5/tx",
            data=raw_hex,
            headers={"Content-Type": "text/plain"},
        )
        txid = response.json().get("txid")
        if not txid:
            raise PublishError(f"Broadcast failed: no txid in response {response.text[:200]}")
        return txid

    async def list_unspent(self, address: str) -> list[SpendableOutput]:
        outputs: list[SpendableOutput] = []
        cursor: Any = 0
        while True:
            response = await asyncio.to_thread(
                self._request,
                "GET",
                f"/v5/evt/p2pkh/own/{address}",
                params={"unspent": "true", "txo": "true", "script": "true", "from": cursor, "limit": PAGE_LIMIT},
            )
            batch = response.json() or []
            if not batch:
                break
            for item in batch:
                if item.get("satoshis", 0) <= 1:
                    continue
                txid, vout = parse_outpoint(item["outpoint"])
                outputs.append(
                    SpendableOutput(txid=txid, vout=vout, satoshis=item["satoshis"], script=item.get("script") or "")
                )
            if len(batch) < PAGE_LIMIT:
                break
            next_cursor = batch[-1].get("score")
            if next_cursor is None or next_cursor == cursor:
                logger.warning("Unspent listing for %s stopped paging at cursor %s", address, cursor)
                break
            cursor = next_cursor
        logger.debug("Found %s spendable outputs for %s", len(outputs), address)
        return outputs

    async def get_transaction(self, txid: str) -> str:
        response = await asyncio.to_thread(self._request, "GET", f"/v5/tx/{txid}")
        return response.content.hex()

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise TransientPublishError(f"Network error calling {url}: {exc}") from exc
        if response.status_code >= 400:
            detail = f"{method} {path} failed with status {response.status_code}: {response.text[:500]}"
            raise PublishError(detail, kind=classify_error(f"{response.status_code} {response.text}"))
        return response


__all__ = ["GorillaPoolIndexer"]

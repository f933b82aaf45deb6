"""Outpoint and access-path helpers."""

from __future__ import annotations

CONTENT_PATH = "/content"
OUTPOINT_SEPARATOR = "_"


def make_outpoint(txid: str, vout: int) -> str:
    """Return the ``txid_vout`` form used on disk and in access paths."""
    return f"{txid}{OUTPOINT_SEPARATOR}{vout}"


def parse_outpoint(outpoint: str) -> tuple[str, int]:
    """Split ``txid_vout`` (or ``txid.vout``) into its parts."""
    separator = OUTPOINT_SEPARATOR if OUTPOINT_SEPARATOR in outpoint else "."
    txid, _, vout = outpoint.rpartition(separator)
    if not txid or not vout.isdigit():
        raise ValueError(f"Malformed outpoint: {outpoint!r}")
    return txid, int(vout)


def access_path(txid: str, vout: int) -> str:
    """Derive the retrieval path for a published entry."""
    return f"{CONTENT_PATH}/{make_outpoint(txid, vout)}"


def outpoint_from_access_path(path: str) -> str:
    return path.rstrip("/").rsplit("/", 1)[-1]

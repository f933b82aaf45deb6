"""Exception hierarchy shared across the deployment pipeline."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from ledger_deploy.models.records import DeploymentRecord


class ErrorKind(str, Enum):
    """How a publish failure should be treated."""

    CONFLICT = "conflict"
    NOT_YET_VISIBLE = "not_yet_visible"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.NOT_YET_VISIBLE, ErrorKind.TRANSIENT)


class DeployError(Exception):
    """Base class for all ledger-deploy errors."""


class AnalysisError(DeployError):
    """A single build file could not be read or classified."""


class CacheError(DeployError):
    """The previous deployment record could not be used."""


class ConfigurationError(DeployError):
    """Invalid or missing configuration detected before any network activity."""


class VersionConflictError(ConfigurationError):
    """The requested version tag already exists in the deployment history."""

    def __init__(self, version: str, existing: list[str], suggestion: str) -> None:
        super().__init__(
            f'Version "{version}" already exists in the deployment history '
            f'(try "{suggestion}"); existing versions: {", ".join(existing)}'
        )
        self.version = version
        self.existing = existing
        self.suggestion = suggestion


class PublishError(DeployError):
    """A ledger operation failed."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ConflictError(PublishError):
    """Double-spend or already-spent input; retrying cannot help."""

    kind = ErrorKind.CONFLICT


class TransientPublishError(PublishError):
    """Network, rate-limit, or indexer-lag failure worth retrying."""

    kind = ErrorKind.TRANSIENT


class InsufficientFundsError(PublishError):
    """The funding key does not control enough spendable value."""


class DeploymentAborted(DeployError):
    """A fatal error stopped the deployment after some units were published."""

    def __init__(self, message: str, partial_record: "DeploymentRecord | None" = None) -> None:
        super().__init__(message)
        self.partial_record = partial_record


_CONFLICT_MARKERS = (
    "already spent",
    "double spend",
    "double-spend",
    "txn-mempool-conflict",
    "missing inputs",
    "bad-txns-inputs-spent",
)
_NOT_VISIBLE_MARKERS = ("not found", "not-found", "could not find", "utxo")
_TRANSIENT_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "econnrefused",
    "enotfound",
    "connection",
    "429",
    "too many requests",
    "rate limit",
)


def classify_error(error: BaseException | str) -> ErrorKind:
    """Classify a failure by its message; conflicts win over every other marker."""
    if isinstance(error, InsufficientFundsError):
        return ErrorKind.FATAL
    if isinstance(error, PublishError) and error.kind is not ErrorKind.FATAL:
        return error.kind
    message = str(error).lower()
    if any(marker in message for marker in _CONFLICT_MARKERS):
        return ErrorKind.CONFLICT
    if any(marker in message for marker in _NOT_VISIBLE_MARKERS):
        return ErrorKind.NOT_YET_VISIBLE
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


__all__ = [
    "AnalysisError",
    "CacheError",
    "ConfigurationError",
    "ConflictError",
    "DeployError",
    "DeploymentAborted",
    "ErrorKind",
    "InsufficientFundsError",
    "PublishError",
    "TransientPublishError",
    "VersionConflictError",
    "classify_error",
]

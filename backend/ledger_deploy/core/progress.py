"""Progress callbacks passed into the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Sequence


@dataclass
class ProgressReporter:
    """Optional hooks invoked as a deployment advances.

    Every hook defaults to ``None``; the ``report_*`` helpers skip unset hooks so
    callers never need to null-check.
    """

    on_analysis_start: Optional[Callable[[], None]] = None
    on_analysis_complete: Optional[Callable[[int], None]] = None
    on_cache_analysis: Optional[Callable[[int, int, Sequence[str]], None]] = None
    on_cycle_detected: Optional[Callable[[Sequence[str]], None]] = None
    on_wave_start: Optional[Callable[[int, int, Sequence[str]], None]] = None
    on_publish_start: Optional[Callable[[str], None]] = None
    on_publish_complete: Optional[Callable[[str, str], None]] = None
    on_publish_skipped: Optional[Callable[[str, str, Optional[int]], None]] = None
    on_retry: Optional[Callable[[str, int, float, str], None]] = None
    on_deployment_complete: Optional[Callable[[str], None]] = None
    on_progress: Optional[Callable[[str], None]] = None

    def report_analysis_start(self) -> None:
        if self.on_analysis_start:
            self.on_analysis_start()

    def report_analysis_complete(self, file_count: int) -> None:
        if self.on_analysis_complete:
            self.on_analysis_complete(file_count)

    def report_cache_analysis(self, cached: int, new: int, cached_paths: Sequence[str]) -> None:
        if self.on_cache_analysis:
            self.on_cache_analysis(cached, new, cached_paths)

    def report_cycle(self, members: Sequence[str]) -> None:
        if self.on_cycle_detected:
            self.on_cycle_detected(members)

    def report_wave_start(self, index: int, total: int, paths: Sequence[str]) -> None:
        if self.on_wave_start:
            self.on_wave_start(index, total, paths)

    def report_publish_start(self, path: str) -> None:
        if self.on_publish_start:
            self.on_publish_start(path)

    def report_publish_complete(self, path: str, access_path: str) -> None:
        if self.on_publish_complete:
            self.on_publish_complete(path, access_path)

    def report_publish_skipped(self, path: str, access_path: str, chunk_count: int | None = None) -> None:
        if self.on_publish_skipped:
            self.on_publish_skipped(path, access_path, chunk_count)

    def report_retry(self, label: str, attempt: int, delay: float, reason: str) -> None:
        if self.on_retry:
            self.on_retry(label, attempt, delay, reason)

    def report_deployment_complete(self, entry_point: str) -> None:
        if self.on_deployment_complete:
            self.on_deployment_complete(entry_point)

    def report(self, message: str) -> None:
        if self.on_progress:
            self.on_progress(message)


__all__ = ["ProgressReporter"]

"""Reference extractors for the text formats found in web build output."""

from __future__ import annotations

import json
import re
from pathlib import PurePosixPath
from typing import Iterable, Iterator

from ledger_deploy.analysis.types import Reference
from ledger_deploy.core.logging import get_logger
from ledger_deploy.utils.urls import resolve_reference, should_skip_url

logger = get_logger(__name__)

MEDIA_EXTENSIONS = (
    "png|jpg|jpeg|gif|svg|webp|ico|mp4|m4v|mov|webm|avi|mkv|flv|wmv|ogg|ogv|mp3|m4a|aac|oga|flac|wav"
)
ASSET_EXTENSIONS = (
    "png|jpg|jpeg|gif|svg|webp|ico|woff|woff2|ttf|eot|otf|json|css|js|mjs|wasm|webm|mp4|m4v|mov|avi|"
    "mkv|flv|wmv|ogg|ogv|mp3|m4a|aac|oga|flac|wav"
)

_HTML_PATTERNS = [
    re.compile(r"<script[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"<link[^>]+href=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"<img[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"<source[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"<video[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"<audio[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"<video[^>]+poster=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"<object[^>]+data=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"<embed[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(
        r"<meta[^>]*property=[\"'](?:og:image|twitter:image)[\"'][^>]*content=[\"']([^\"']+)[\"']",
        re.IGNORECASE,
    ),
    re.compile(
        r"<meta[^>]*content=[\"']([^\"']+)[\"'][^>]*property=[\"'](?:og:image|twitter:image)[\"']",
        re.IGNORECASE,
    ),
    re.compile(rf"data-[a-z-]+\s*=\s*[\"']([^\"']*\.(?:{MEDIA_EXTENSIONS}))[\"']", re.IGNORECASE),
]
_SRCSET_RE = re.compile(r"<(?:img|source)[^>]+srcset=[\"']([^\"']+)[\"']", re.IGNORECASE)

_CSS_PATTERNS = [
    re.compile(r"url\(\s*[\"']?([^\"')]+?)[\"']?\s*\)", re.IGNORECASE),
    re.compile(r"@import\s+[\"']([^\"';]+)[\"']", re.IGNORECASE),
]

_JS_MODULE_PATTERNS = [
    re.compile(r"import\s+[^;]*?from\s+[\"']([^\"']+)[\"']"),
    re.compile(r"import\(\s*[\"']([^\"']+)[\"']\s*\)"),
    re.compile(r"require\(\s*[\"']([^\"']+)[\"']\s*\)"),
    re.compile(r"new\s+URL\s*\(\s*[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"new\s+(?:Worker|SharedWorker)\s*\(\s*[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"\.register\s*\(\s*[\"']([^\"']+)[\"']", re.IGNORECASE),
]
_JS_FETCH_RE = re.compile(r"fetch\s*\(\s*[\"']([^\"']+\.[a-z]{2,4})[\"']", re.IGNORECASE)
_JS_TEMPLATE_RE = re.compile(rf"`(\.{{0,2}}/[^`$]*\.(?:{ASSET_EXTENSIONS}))`", re.IGNORECASE)
_JS_ASSET_RE = re.compile(rf"[\"']((?:\.{{0,2}}/|\w+/)[^\"'\s]*\.(?:{ASSET_EXTENSIONS}))[\"']", re.IGNORECASE)

_JSON_PATH_RE = re.compile(
    r"\"((?:\.{1,2})?/[^\"]*\.(?:png|jpg|jpeg|gif|svg|webp|ico|json|woff|woff2|ttf|eot|otf))\"",
    re.IGNORECASE,
)

_SVG_PATTERNS = [
    re.compile(r"(?<![\w:])href=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"xlink:href=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"url\(\s*[\"']?([^\"')]+?)[\"']?\s*\)", re.IGNORECASE),
]


def _is_explicit_path(ref: str) -> bool:
    return ref.startswith(("./", "../", "/"))


class BaseExtractor:
    """Common extractor interface."""

    suffixes: tuple[str, ...] = ()

    def can_extract(self, path: str) -> bool:
        return PurePosixPath(path).suffix.lower() in self.suffixes

    def extract(self, text: str, source_path: str) -> list[Reference]:  # pragma: no cover - interface
        raise NotImplementedError

    @staticmethod
    def _reference(
        raw: str,
        start: int,
        source_path: str,
        root_relative_bare: bool = False,
    ) -> Reference | None:
        if should_skip_url(raw):
            return None
        target = resolve_reference(raw, source_path, root_relative_bare=root_relative_bare)
        if target is None:
            return None
        return Reference(raw=raw, start=start, end=start + len(raw), target=target)

    def _scan(
        self,
        text: str,
        source_path: str,
        patterns: Iterable[re.Pattern[str]],
        explicit_only: bool = False,
    ) -> Iterator[Reference]:
        for pattern in patterns:
            for match in pattern.finditer(text):
                raw = match.group(1).strip()
                if explicit_only and not _is_explicit_path(raw):
                    continue
                offset = match.start(1) + match.group(1).find(raw)
                ref = self._reference(raw, offset, source_path)
                if ref is not None:
                    yield ref


class HtmlExtractor(BaseExtractor):
    suffixes = (".html", ".htm")

    def extract(self, text: str, source_path: str) -> list[Reference]:
        references = list(self._scan(text, source_path, _HTML_PATTERNS))
        for match in _SRCSET_RE.finditer(text):
            value = match.group(1)
            base = match.start(1)
            cursor = 0
            for candidate in value.split(","):
                url = candidate.strip().split()[0] if candidate.strip() else ""
                position = value.find(url, cursor) if url else -1
                cursor += len(candidate) + 1
                if position < 0:
                    continue
                ref = self._reference(url, base + position, source_path)
                if ref is not None:
                    references.append(ref)
        return references


class CssExtractor(BaseExtractor):
    suffixes = (".css",)

    def extract(self, text: str, source_path: str) -> list[Reference]:
        return list(self._scan(text, source_path, _CSS_PATTERNS))


class JsExtractor(BaseExtractor):
    suffixes = (".js", ".mjs")

    def extract(self, text: str, source_path: str) -> list[Reference]:
        references = list(self._scan(text, source_path, _JS_MODULE_PATTERNS, explicit_only=True))
        references.extend(self._scan(text, source_path, [_JS_FETCH_RE, _JS_TEMPLATE_RE], explicit_only=True))
        for match in _JS_ASSET_RE.finditer(text):
            ref = self._reference(match.group(1), match.start(1), source_path, root_relative_bare=True)
            if ref is not None:
                references.append(ref)
        return references


class JsonExtractor(BaseExtractor):
    suffixes = (".json", ".webmanifest")

    def extract(self, text: str, source_path: str) -> list[Reference]:
        try:
            json.loads(text)
        except ValueError:
            logger.warning("Invalid JSON in %s, skipping reference extraction", source_path)
            return []
        return list(self._scan(text, source_path, [_JSON_PATH_RE]))


class SvgExtractor(BaseExtractor):
    suffixes = (".svg",)

    def extract(self, text: str, source_path: str) -> list[Reference]:
        references: list[Reference] = []
        for pattern in _SVG_PATTERNS:
            for match in pattern.finditer(text):
                raw = match.group(1).strip()
                if raw.startswith("#"):
                    continue
                path_part = raw.split("#", 1)[0]
                if not path_part:
                    continue
                ref = self._reference(path_part, match.start(1) + match.group(1).find(path_part), source_path)
                if ref is not None:
                    references.append(ref)
        return references


class ExtractorRegistry:
    """Registry that selects an appropriate extractor for a path."""

    def __init__(self) -> None:
        self._extractors: list[BaseExtractor] = [
            HtmlExtractor(),
            CssExtractor(),
            JsExtractor(),
            JsonExtractor(),
            SvgExtractor(),
        ]

    def register(self, extractor: BaseExtractor) -> None:
        self._extractors.insert(0, extractor)

    def for_path(self, path: str) -> BaseExtractor | None:
        for extractor in self._extractors:
            if extractor.can_extract(path):
                return extractor
        return None

    def extract(self, data: bytes, source_path: str) -> list[Reference]:
        """Return unique references ordered by position; binary formats yield none."""
        extractor = self.for_path(source_path)
        if extractor is None:
            return []
        text = data.decode("utf-8", errors="surrogateescape")
        unique: dict[tuple[int, int], Reference] = {}
        for ref in extractor.extract(text, source_path):
            unique.setdefault((ref.start, ref.end), ref)
        return sorted(unique.values(), key=lambda ref: ref.start)


__all__ = [
    "BaseExtractor",
    "CssExtractor",
    "ExtractorRegistry",
    "HtmlExtractor",
    "JsExtractor",
    "JsonExtractor",
    "SvgExtractor",
]

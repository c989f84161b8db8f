"""Deterministic local analyzer routed by content type."""

from __future__ import annotations

import logging
import re
import struct
from collections import Counter
from pathlib import Path

from file_insight.analysis.base import (
    DOCUMENT_TYPES,
    IMAGE_TYPES,
    AnalysisError,
    AnalysisResult,
)

logger = logging.getLogger(__name__)

UNSUPPORTED_RESULT = AnalysisResult(
    tags=("file", "unsupported"),
    summary="File uploaded successfully (type not supported for AI analysis)",
)

_WORD_RE = re.compile(r"[^\W\d_]{4,}", re.UNICODE)
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")
_STOPWORDS = frozenset(
    {
        "about", "after", "also", "been", "before", "being", "between", "both", "could",
        "does", "each", "from", "have", "here", "into", "just", "like", "more", "most",
        "much", "only", "other", "over", "same", "should", "some", "such", "than", "that",
        "their", "them", "then", "there", "these", "they", "this", "those", "through",
        "under", "very", "were", "what", "when", "where", "which", "while", "will", "with",
        "would", "your",
    },
)


class HeuristicAnalyzer:
    """Derives tags and a summary from file headers and plain-text statistics."""

    def __init__(self, *, max_tags: int = 5, max_text_chars: int = 200_000) -> None:
        self.max_tags = max_tags
        self.max_text_chars = max_text_chars

    def analyze(self, path: Path, mime_type: str) -> AnalysisResult:
        logger.debug("Starting analysis for %s (%s)", path, mime_type)
        if mime_type in IMAGE_TYPES:
            return self._analyze_image(path, mime_type)
        if mime_type == "application/pdf":
            return self._analyze_pdf(path)
        if mime_type in DOCUMENT_TYPES:
            return self._analyze_text(path)
        logger.warning("Unsupported file type for analysis: %s", mime_type)
        return UNSUPPORTED_RESULT

    def _analyze_image(self, path: Path, mime_type: str) -> AnalysisResult:
        header = _read_bytes(path, 32)
        detected = _detect_image_format(header)
        if detected is None:
            raise AnalysisError(f"File content does not match declared type {mime_type}")

        tags = ["image", detected]
        size = _image_size(detected, header)
        if size is None:
            return AnalysisResult(tags=tuple(tags), summary=f"{detected.upper()} image")
        width, height = size
        if width > height:
            tags.append("landscape")
        elif height > width:
            tags.append("portrait")
        else:
            tags.append("square")
        return AnalysisResult(
            tags=tuple(tags),
            summary=f"{detected.upper()} image, {width}x{height} pixels",
        )

    def _analyze_pdf(self, path: Path) -> AnalysisResult:
        content = _read_bytes(path, None)
        if not content.startswith(b"%PDF-"):
            raise AnalysisError("File content is not a PDF document")
        pages = len(re.findall(rb"/Type\s*/Page(?!s)", content))
        noun = "page" if pages == 1 else "pages"
        return AnalysisResult(
            tags=("document", "pdf"),
            summary=f"PDF document, {pages} {noun}" if pages else "PDF document",
        )

    def _analyze_text(self, path: Path) -> AnalysisResult:
        text = _read_bytes(path, self.max_text_chars).decode("utf-8", errors="replace").strip()
        if not text:
            raise AnalysisError("Document is empty")

        words = [
            word
            for word in (match.group(0).lower() for match in _WORD_RE.finditer(text))
            if word not in _STOPWORDS
        ]
        ranked = Counter(words).most_common()
        keywords = [word for word, _ in ranked[: self.max_tags]]
        return AnalysisResult(
            tags=("document", *keywords),
            summary=_leading_summary(text),
        )


def _read_bytes(path: Path, limit: int | None) -> bytes:
    try:
        with path.open("rb") as handle:
            return handle.read() if limit is None else handle.read(limit)
    except OSError as error:
        raise AnalysisError(f"Cannot read {path}: {error}") from error


def _detect_image_format(header: bytes) -> str | None:
    if header.startswith(b"\x89PNG\r\n\x1a\n"):
        return "png"
    if header.startswith(b"\xff\xd8\xff"):
        return "jpeg"
    if header[:6] in {b"GIF87a", b"GIF89a"}:
        return "gif"
    if header[:4] == b"RIFF" and header[8:12] == b"WEBP":
        return "webp"
    return None


def _image_size(fmt: str, header: bytes) -> tuple[int, int] | None:
    if fmt == "png" and len(header) >= 24:
        width, height = struct.unpack(">II", header[16:24])
        return int(width), int(height)
    if fmt == "gif" and len(header) >= 10:
        width, height = struct.unpack("<HH", header[6:10])
        return int(width), int(height)
    return None


def _leading_summary(text: str, *, limit: int = 200) -> str:
    collapsed = " ".join(text.split())
    sentences = _SENTENCE_RE.split(collapsed)
    summary = ""
    for sentence in sentences:
        candidate = f"{summary} {sentence}".strip()
        if len(candidate) > limit:
            break
        summary = candidate
    if not summary:
        summary = collapsed[: limit - 3].rstrip() + "..."
    return summary

"""Analysis collaborator interface."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

IMAGE_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"})
DOCUMENT_TYPES = frozenset({"application/pdf", "text/plain", "text/markdown"})


class AnalysisError(RuntimeError):
    """Raised by an analyzer when it cannot produce tags and a summary."""


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    """Tags and summary derived from one file."""

    tags: tuple[str, ...]
    summary: str


class Analyzer(Protocol):
    """Protocol implemented by analysis collaborators."""

    def analyze(self, path: Path, mime_type: str) -> AnalysisResult:
        """Analyze file content and return tags and a summary."""


def is_analysis_supported(mime_type: str) -> bool:
    return mime_type in IMAGE_TYPES or mime_type in DOCUMENT_TYPES


def file_category(mime_type: str) -> str:
    if mime_type in IMAGE_TYPES:
        return "image"
    if mime_type == "application/pdf":
        return "pdf"
    if mime_type in DOCUMENT_TYPES:
        return "document"
    return "unknown"


def close_analyzer(analyzer: Analyzer) -> None:
    """Release resources held by analyzers that expose ``close()``."""

    close = getattr(analyzer, "close", None)
    if callable(close):
        close()

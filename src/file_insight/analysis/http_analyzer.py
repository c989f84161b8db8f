"""Remote analysis service client."""

from __future__ import annotations

import logging
from pathlib import Path

import httpx

from file_insight.analysis.base import AnalysisError, AnalysisResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_USER_AGENT = "file-insight/0.1 (+analysis-worker)"


class HttpAnalyzer:
    """Uploads the file to an analysis endpoint and reads back ``{tags, summary}``.

    Connection-level retries only; failed analyses are retried by the job queue.
    """

    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        base_headers = {"User-Agent": DEFAULT_USER_AGENT}
        if headers:
            base_headers.update(headers)
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=base_headers,
            transport=transport or httpx.HTTPTransport(retries=1),
        )

    def analyze(self, path: Path, mime_type: str) -> AnalysisResult:
        try:
            with path.open("rb") as handle:
                response = self._client.post(
                    self.url,
                    files={"file": (path.name, handle, mime_type)},
                    data={"mime_type": mime_type},
                )
        except OSError as error:
            raise AnalysisError(f"Cannot read {path}: {error}") from error
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling analysis service %s", self.url)
            raise AnalysisError(f"Analysis service timed out: {error}") from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling analysis service %s: %s", self.url, error)
            raise AnalysisError(f"Analysis service request failed: {error}") from error

        if not response.is_success:
            raise AnalysisError(
                f"Analysis service returned HTTP {response.status_code}: {response.text[:200]}",
            )
        try:
            payload = response.json()
        except ValueError as error:
            raise AnalysisError("Analysis service returned invalid JSON") from error
        return _parse_result(payload)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpAnalyzer:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _parse_result(payload: object) -> AnalysisResult:
    if not isinstance(payload, dict):
        raise AnalysisError("Analysis service response must be a JSON object")
    error = payload.get("error")
    if error:
        raise AnalysisError(str(error))
    tags = payload.get("tags") or []
    if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
        raise AnalysisError("Analysis service 'tags' must be a list of strings")
    summary = payload.get("summary") or ""
    if not isinstance(summary, str):
        raise AnalysisError("Analysis service 'summary' must be a string")
    return AnalysisResult(tags=tuple(tags), summary=summary)

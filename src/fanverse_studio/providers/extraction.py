"""Result extraction for provider callback and task-status payloads.

Provider payloads are not a fixed schema. Each provider gets a
ResultExtractor that normalizes a raw payload into one ExtractionResult:

  completed  - a result URL was found, or the payload's own status says done
  failed     - an explicit error indicator and no result URL
  ambiguous  - neither; the unit stays in flight

GenericResultExtractor is the best-effort fallback for unknown shapes: it
checks the known direct fields, nested output/result/data objects, result
arrays, and finally scans the serialized payload for a media URL.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_AMBIGUOUS = "ambiguous"

COMPLETED_STATUSES = frozenset({"completed", "success", "succeeded", "done"})
FAILED_STATUSES = frozenset({"failed", "fail", "error"})

_URL_FIELDS = (
    "image_url", "video_url", "url", "imageUrl", "videoUrl", "image", "video",
)
_ARRAY_FIELDS = ("images", "videos", "resultUrls", "urls")
_MEDIA_URL_PATTERN = re.compile(
    r"https?://[^\"\\\s]+\.(?:png|jpg|jpeg|webp|gif|mp4|webm|mov)[^\"\\\s]*",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ExtractionResult:
    """Normalized reading of one provider payload."""

    outcome: str
    result_url: str | None = None
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome != OUTCOME_AMBIGUOUS


class ResultExtractor:
    """Interface: map a raw provider payload to an ExtractionResult."""

    def extract(self, payload: Any) -> ExtractionResult:
        raise NotImplementedError


def _is_http_url(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("http")


def _first_url_in_array(value: Any) -> str | None:
    if not isinstance(value, list) or not value:
        return None
    first = value[0]
    if _is_http_url(first):
        return first
    if isinstance(first, dict) and _is_http_url(first.get("url")):
        return first["url"]
    return None


def find_media_url(payload: Any) -> str | None:
    """Best-effort search for a result URL anywhere in the payload."""
    if not isinstance(payload, dict):
        return None

    # Search order: output, top level, result, data.
    containers: list[dict[str, Any]] = []
    for key in ("output", None, "result", "data"):
        container = payload if key is None else payload.get(key)
        if isinstance(container, dict):
            containers.append(container)

    for container in containers:
        for key in _URL_FIELDS:
            if _is_http_url(container.get(key)):
                return container[key]

    for container in containers:
        for key in _ARRAY_FIELDS:
            url = _first_url_in_array(container.get(key))
            if url is not None:
                return url

    match = _MEDIA_URL_PATTERN.search(json.dumps(payload))
    return match.group(0) if match else None


def find_error(payload: Any) -> str | None:
    """Return an error message when the payload carries an explicit error indicator."""
    if not isinstance(payload, dict):
        return None
    status = str(payload.get("status") or "").lower()
    if status in FAILED_STATUSES:
        return str(
            payload.get("error")
            or payload.get("message")
            or payload.get("error_message")
            or "Generation failed"
        )
    error = payload.get("error")
    if error:
        return error if isinstance(error, str) else json.dumps(error)
    return None


def payload_status(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    return str(payload.get("status") or "").lower()


class GenericResultExtractor(ResultExtractor):
    """Fallback extractor for unknown or unstable payload shapes.

    A result URL wins over any status field in the same payload.
    """

    def extract(self, payload: Any) -> ExtractionResult:
        result_url = find_media_url(payload)
        if result_url is not None:
            return ExtractionResult(OUTCOME_COMPLETED, result_url=result_url)

        error_message = find_error(payload)
        if error_message is not None:
            return ExtractionResult(OUTCOME_FAILED, error_message=error_message)

        if payload_status(payload) in COMPLETED_STATUSES:
            return ExtractionResult(OUTCOME_COMPLETED)

        return ExtractionResult(OUTCOME_AMBIGUOUS)


class KieJobExtractor(ResultExtractor):
    """Extractor for the kie.ai job record shape.

    Job records look like:
        {"code": 200, "data": {"taskId": "...", "state": "success",
                               "resultJson": "{\\"resultUrls\\": [...]}",
                               "failMsg": ""}}

    Anything that does not match falls through to the generic extractor.
    """

    def __init__(self, fallback: ResultExtractor | None = None) -> None:
        self._fallback = fallback or GenericResultExtractor()

    def extract(self, payload: Any) -> ExtractionResult:
        record = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(record, dict) or "state" not in record:
            return self._fallback.extract(payload)

        state = str(record.get("state") or "").lower()
        result_url = _first_url_in_array(self._parse_result_json(record).get("resultUrls"))
        if result_url is not None:
            return ExtractionResult(OUTCOME_COMPLETED, result_url=result_url)
        if state in FAILED_STATUSES:
            message = record.get("failMsg") or record.get("failCode") or "Generation failed"
            return ExtractionResult(OUTCOME_FAILED, error_message=str(message))
        if state in COMPLETED_STATUSES:
            # Finished without a parsable result list; try the generic search.
            generic = self._fallback.extract(payload)
            if generic.result_url is not None:
                return generic
            return ExtractionResult(OUTCOME_COMPLETED)
        return ExtractionResult(OUTCOME_AMBIGUOUS)

    @staticmethod
    def _parse_result_json(record: dict[str, Any]) -> dict[str, Any]:
        raw = record.get("resultJson")
        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str) and raw:
            try:
                parsed = json.loads(raw)
            except ValueError:
                return {}
            return parsed if isinstance(parsed, dict) else {}
        return {}


__all__ = [
    "COMPLETED_STATUSES",
    "ExtractionResult",
    "FAILED_STATUSES",
    "GenericResultExtractor",
    "KieJobExtractor",
    "OUTCOME_AMBIGUOUS",
    "OUTCOME_COMPLETED",
    "OUTCOME_FAILED",
    "ResultExtractor",
    "find_error",
    "find_media_url",
]

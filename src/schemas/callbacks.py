"""Tolerant parsing of generation-provider callbacks.

Providers post partial, tagged payloads and may repeat them. The parser
never raises on odd shapes: it pulls out the task id, the event subtype and
whatever result entries it can recognize, and leaves the decision about
what to do with them to the completion handler.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

COMPLETE = "complete"
FAILED = "failed"

_COMPLETE_ALIASES = {"complete", "completed", "success", "succeeded"}
_FAILED_ALIASES = {"failed", "fail", "error"}

_RESULT_REF_KEYS = ("audio_url", "audioUrl", "video_url", "videoUrl", "url", "result_url", "resultUrl")
_SINGLE_RESULT_KEYS = ("video_url", "videoUrl", "result_url", "resultUrl")


class CallbackParseError(ValueError):
    """The callback body cannot be attributed to a task."""


@dataclass
class ProviderResult:
    """One result entry as reported by a provider."""

    result_ref: Optional[str] = None
    title: Optional[str] = None
    duration: Optional[float] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_usable(self) -> bool:
        return bool(self.result_ref)


@dataclass
class GenerationCallback:
    task_id: str
    subtype: str
    results: list[ProviderResult] = field(default_factory=list)
    code: Optional[int] = None
    message: Optional[str] = None

    @property
    def usable_results(self) -> list[ProviderResult]:
        return [r for r in self.results if r.is_usable]


def _first_str(source: dict, *keys: str) -> Optional[str]:
    for key in keys:
        value = source.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _media_ref(raw: dict) -> Optional[str]:
    """First media reference from a ``mediaRefs`` list, mapping or string."""
    refs = raw.get("mediaRefs", raw.get("media_refs"))
    if isinstance(refs, str):
        return refs or None
    if isinstance(refs, dict):
        refs = list(refs.values())
    if isinstance(refs, list):
        for ref in refs:
            if isinstance(ref, str) and ref:
                return ref
    return None


def _parse_result(raw: Any) -> ProviderResult:
    """Malformed entries become results without a media reference."""
    if isinstance(raw, str):
        return ProviderResult(result_ref=raw or None)
    if not isinstance(raw, dict):
        return ProviderResult()

    metadata = {}
    for key in ("id", "image_url", "imageUrl", "tags", "prompt", "model_name", "lyrics"):
        if raw.get(key) is not None:
            metadata[key] = raw[key]

    return ProviderResult(
        result_ref=_media_ref(raw) or _first_str(raw, *_RESULT_REF_KEYS),
        title=_first_str(raw, "title"),
        duration=_to_float(raw.get("duration")),
        metadata=metadata,
    )


def _normalize_subtype(value: Any) -> str:
    if value is None:
        return COMPLETE
    subtype = str(value).strip()
    lowered = subtype.lower()
    if lowered in _COMPLETE_ALIASES:
        return COMPLETE
    if lowered in _FAILED_ALIASES:
        return FAILED
    return lowered or COMPLETE


def _result_json_urls(data: dict) -> list[Any]:
    """Result urls packed into a JSON string field."""
    raw = data.get("resultJson")
    if not isinstance(raw, str):
        return []
    try:
        decoded = json.loads(raw)
    except ValueError:
        return []
    urls = decoded.get("resultUrls") if isinstance(decoded, dict) else None
    return urls if isinstance(urls, list) else []


def _extract_results(body: dict, data: dict) -> list[Any]:
    for container in (data, body):
        for key in ("data", "results", "resultUrls", "result_urls"):
            value = container.get(key)
            if isinstance(value, list):
                return value

    urls = _result_json_urls(data)
    if urls:
        return urls

    # Single-result providers nest the result object one level down
    for key in ("data", "video"):
        nested = data.get(key)
        if isinstance(nested, dict) and _first_str(nested, *_RESULT_REF_KEYS):
            return [nested]

    single = _first_str(data, *_SINGLE_RESULT_KEYS) or _first_str(body, *_SINGLE_RESULT_KEYS)
    return [single] if single else []


def parse_generation_callback(body: Any) -> GenerationCallback:
    """
    Parse a provider callback body.

    Raises:
        CallbackParseError: if the body is not an object or carries no task id.
    """
    if not isinstance(body, dict):
        raise CallbackParseError("Invalid payload")

    data = body.get("data") if isinstance(body.get("data"), dict) else {}

    task_id = _first_str(data, "task_id", "taskId") or _first_str(body, "task_id", "taskId")
    if not task_id:
        raise CallbackParseError("Missing taskId")

    subtype_keys = ("callbackType", "type", "state", "status")
    raw_subtype = _first_str(data, *subtype_keys) or _first_str(body, *subtype_keys)

    code = body.get("code")
    if not _is_int(code):
        # A numeric status stands in for a missing envelope code
        code = next(
            (c[k] for c in (body, data) for k in ("status", "state") if _is_int(c.get(k))),
            None,
        )
    subtype = _normalize_subtype(raw_subtype)
    # A non-success envelope code turns a completion into a failure
    if subtype == COMPLETE and code is not None and not 200 <= code < 300:
        subtype = FAILED

    return GenerationCallback(
        task_id=task_id,
        subtype=subtype,
        results=[_parse_result(r) for r in _extract_results(body, data)],
        code=code,
        message=(
            _first_str(data, "failMsg", "errorMessage")
            or _first_str(body, "failMsg", "errorMessage", "msg", "message")
        ),
    )

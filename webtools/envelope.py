"""Uniform tool response envelope: ``{"content": [{"type": "text"|"image", ...}]}``."""
import base64
import json
from typing import Any, Dict, List, Optional, Union

from webtools.fetch import Failure

ContentItem = Dict[str, Any]

# Human-readable titles for the ``error`` field of failure payloads.
ERROR_TITLES = {
    "unavailable": "Site unavailable",
    "blocked": "Access blocked",
    "rate_limited": "Rate limited",
    "network": "Network error",
    "certificate": "Certificate error",
    "timeout": "Request timed out",
    "navigation": "Navigation failed",
    "capability_unavailable": "Capability unavailable",
    "empty_content": "No content retrieved",
    "invalid_request": "Invalid arguments",
    "internal": "Operation failed",
}


def text_content(text: str) -> ContentItem:
    return {"type": "text", "text": text}


def image_content(data: Union[bytes, str], mime_type: str = "image/png") -> ContentItem:
    if isinstance(data, bytes):
        data = base64.b64encode(data).decode("ascii")
    return {"type": "image", "data": data, "mimeType": mime_type}


def success_envelope(*items: ContentItem) -> Dict[str, List[ContentItem]]:
    return {"content": list(items)}


def error_payload(failure: Failure, url: Optional[str]) -> Dict[str, Any]:
    payload = {
        "error": ERROR_TITLES.get(failure.kind.value, "Operation failed"),
        "details": failure.message,
        "recommendation": failure.recommendation,
        "retryable": failure.retryable,
        "url": url,
        "kind": failure.kind.value,
    }
    if failure.status is not None:
        payload["status"] = failure.status
    if failure.suggested_parameter_changes:
        payload["suggestedSettings"] = dict(failure.suggested_parameter_changes)
    return payload


def failure_envelope(failure: Failure, url: Optional[str]) -> Dict[str, List[ContentItem]]:
    return success_envelope(text_content(json.dumps(error_payload(failure, url), indent=2)))


def is_error_envelope(envelope: Dict[str, List[ContentItem]]) -> bool:
    """True when the envelope carries a JSON error payload."""
    items = envelope.get("content") or []
    if len(items) != 1 or items[0].get("type") != "text":
        return False
    try:
        payload = json.loads(items[0]["text"])
    except (ValueError, TypeError):
        return False
    return isinstance(payload, dict) and {"error", "retryable", "recommendation"} <= payload.keys()

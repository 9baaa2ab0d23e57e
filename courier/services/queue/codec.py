from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from courier.core.config import get_settings
from courier.core.errors import PayloadTooLargeError, QueueValidationError
from courier.domain.queue import (
    METADATA_BUSINESS_KEY,
    METADATA_DISCRIMINATOR,
    METADATA_LEGACY_DISCRIMINATOR,
)


logger = logging.getLogger(__name__)

_ERROR_MESSAGE_MAX_CHARS = 1000
_SENSITIVE_KEY_PATTERNS = ["password", "secret", "token", "authorization", "api_key", "apikey"]
_REDACTED_VALUE = "[REDACTED]"
_CREDENTIAL_FRAGMENT = re.compile(
    r"(?i)\b(password|passwd|pwd|secret|token|api[_-]?key|authorization)\b(\s*[=:]\s*)(\S+)"
)
_WHITESPACE = re.compile(r"\s+")


def encode_document(value: Mapping[str, Any], *, field: str) -> str:
    try:
        return json.dumps(dict(value), separators=(",", ":"), sort_keys=True, default=str)
    except (TypeError, ValueError) as exc:
        raise QueueValidationError(f"{field} is not JSON serializable: {exc}") from exc


def enforce_size_limit(*, payload_json: str, metadata_json: str | None) -> None:
    # Reject oversized documents outright; storing a truncated payload would deliver garbage.
    limit = max(1, int(get_settings().queue_max_payload_bytes))
    size = len(payload_json.encode("utf-8"))
    if metadata_json is not None:
        size += len(metadata_json.encode("utf-8"))
    if size > limit:
        raise PayloadTooLargeError(f"payload and metadata are {size} bytes; limit is {limit}")


def decode_payload(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError("payload must be a JSON object")
    return value


def decode_metadata(raw: str | None) -> tuple[dict[str, Any], bool]:
    """Parse stored metadata, returning ``(metadata, corrupt)``.

    Corrupt metadata never blocks delivery: callers get an empty mapping and the
    ``corrupt`` flag so the row can be quarantined.
    """
    if raw is None or raw == "":
        return {}, False
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("queue_metadata_unparseable length=%s", len(raw))
        return {}, True
    if not isinstance(value, dict):
        logger.warning("queue_metadata_not_object type=%s", type(value).__name__)
        return {}, True
    return value, False


def well_known_keys(metadata: Mapping[str, Any] | None) -> tuple[str | None, str | None]:
    # Pull the dedup key and discriminator; the legacy status key doubles as a discriminator.
    if not metadata:
        return None, None
    business_key = metadata.get(METADATA_BUSINESS_KEY)
    discriminator = metadata.get(METADATA_DISCRIMINATOR)
    if discriminator is None:
        discriminator = metadata.get(METADATA_LEGACY_DISCRIMINATOR)
    return _optional_str(business_key), _optional_str(discriminator)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def sanitize_error_message(message: Any) -> str:
    # Stored errors surface in admin tooling, so strip credentials and bound the length.
    text = str(message) if message is not None else ""
    text = _CREDENTIAL_FRAGMENT.sub(lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", text)
    text = _WHITESPACE.sub(" ", text).strip()
    if not text:
        text = "unknown error"
    if len(text) > _ERROR_MESSAGE_MAX_CHARS:
        text = text[: _ERROR_MESSAGE_MAX_CHARS - 3] + "..."
    return text


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields before metadata leaves the process.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            lowered = key.lower()
            if any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value

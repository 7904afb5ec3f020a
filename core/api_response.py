# core/api_response.py
"""
Interpretation of gateway responses.

The upstream banking gateway does not always signal failure through the HTTP
status: a 200 body such as {"success": false, "message": "..."} or
{"status": 400, "details": [...]} is an error too.
"""

import json
import logging
import math
from typing import Any, Optional

logger = logging.getLogger(__name__)

ERROR_FALLBACK = "حدث خطأ غير متوقع"


class ApiError(Exception):
    """Error reported by the gateway"""

    def __init__(self, message: str, status: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.details = details


def coerce_status_code(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip() or 'nan')
        except ValueError:
            return None
        return int(parsed) if math.isfinite(parsed) else None
    return None


def indicates_failure(value: Any) -> bool:
    if isinstance(value, bool):
        return value is False
    if isinstance(value, (int, float)):
        return value == 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        return normalized in ('false', '0')
    return False


def extract_detail_message(details: Any) -> Optional[str]:
    if not details:
        return None

    if isinstance(details, str):
        return details.strip() or None

    if isinstance(details, list):
        for entry in details:
            if isinstance(entry, str) and entry.strip():
                return entry.strip()
            if isinstance(entry, dict) and isinstance(entry.get('message'), str):
                message = entry['message'].strip()
                if message:
                    return message
        return None

    if isinstance(details, dict) and isinstance(details.get('message'), str):
        return details['message'].strip() or None

    return None


def is_error_envelope(value: Any) -> bool:
    if not isinstance(value, dict):
        return False

    if 'success' in value and indicates_failure(value['success']):
        return True

    if 'status' in value:
        status = coerce_status_code(value['status'])
        if status is not None and status >= 400:
            return True

    return False


def extract_message(envelope: Optional[dict], fallback: Optional[str] = None) -> str:
    if not envelope:
        return fallback or ERROR_FALLBACK

    detail_message = extract_detail_message(envelope.get('details'))
    if detail_message:
        return detail_message

    message = envelope.get('message')
    if isinstance(message, str) and message.strip():
        return message.strip()

    status = coerce_status_code(envelope.get('status'))
    if status is not None and status >= 400:
        return f"Request failed with status {envelope.get('status')}"

    return fallback or ERROR_FALLBACK


def handle_api_response(status: int, text: str, fallback: Optional[str] = None) -> Any:
    """
    Parse a gateway response body or raise ApiError.

    Args:
        status: HTTP status code
        text: Raw response body
        fallback: Message used when the body carries none

    Returns:
        Parsed JSON, the raw text for non-JSON bodies, or None for empty bodies

    Raises:
        ApiError: non-2xx status or an error envelope in the body
    """
    trimmed = (text or '').strip()
    ok = 200 <= status < 300

    parsed = None
    is_json = False
    if trimmed:
        try:
            parsed = json.loads(trimmed)
            is_json = True
        except ValueError:
            parsed = None

    envelope = parsed if is_json and is_error_envelope(parsed) else None

    if not ok or envelope is not None:
        message = extract_message(envelope, fallback)
        if envelope is not None:
            error_status = coerce_status_code(envelope.get('status'))
        else:
            error_status = status
        details = envelope.get('details') if envelope is not None else None
        logger.debug(f"Gateway error ({error_status}): {message}")
        raise ApiError(message, error_status, details)

    if not trimmed:
        return None

    if not is_json:
        return text

    return parsed


def error_message_from_body(text: str, fallback: str) -> str:
    """Best-effort error message from an error response body"""
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        return text or fallback

    if isinstance(data, list):
        return "\n".join(str(item) for item in data)
    if isinstance(data, str):
        return data
    if isinstance(data, dict) and (data.get('message') or data.get('error')):
        return data.get('message') or data.get('error')
    return fallback

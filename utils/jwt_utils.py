# utils/jwt_utils.py
"""Unverified JWT payload decoding (the upstream gateway validates signatures)"""

import logging
import re
from typing import Any, Dict, Optional

import jwt

logger = logging.getLogger(__name__)

_LEADING_INT = re.compile(r'^\s*([+-]?\d+)')


def decode_jwt_payload(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode the payload of a JWT without checking its signature or claims.

    Returns:
        dict or None if the token is malformed
    """
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError as e:
        logger.debug(f"Failed to decode JWT payload: {e}")
        return None


def user_id_from_token(token: str) -> Optional[int]:
    """
    Numeric user id from the `nameid` claim, falling back to `sub`.

    Zero is not a user id: like an unreadable claim it yields None.
    """
    payload = decode_jwt_payload(token)
    if payload is None:
        return None

    raw = payload.get('nameid')
    if raw is None:
        raw = payload.get('sub')
    if raw is None:
        return None

    match = _LEADING_INT.match(str(raw))
    if not match:
        return None

    user_id = int(match.group(1))
    return user_id or None

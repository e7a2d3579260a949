"""
Webhook and API signatures for the meeting providers.

Tencent Meeting signs callbacks with SHA-1 over the lexicographically sorted
concatenation of token, timestamp, nonce and data. Outbound REST calls are
signed with HMAC-SHA256 instead. Lark signs encrypted callbacks with SHA-256.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def compute_signature(token: str, timestamp: str, nonce: str, data: str) -> str:
    """
    Compute the Tencent callback signature.

    The four values are sorted as strings, not kept in positional order,
    then joined without a separator and hashed with SHA-1.
    """
    parts = sorted([token, timestamp, nonce, data])
    return hashlib.sha1("".join(parts).encode("utf-8")).hexdigest()


def verify_signature(
    token: str,
    timestamp: str,
    nonce: str,
    data: str,
    signature: Optional[str],
) -> bool:
    """
    Check a Tencent callback signature.

    Returns False for any mismatch or malformed input; never raises.
    The comparison is case-sensitive.
    """
    if not isinstance(signature, str) or not signature:
        return False
    try:
        expected = compute_signature(token, timestamp, nonce, data)
    except (TypeError, AttributeError) as e:
        logger.warning(f"Signature inputs are not strings: {e}")
        return False
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def sign_api_request(
    secret_key: str,
    method: str,
    secret_id: str,
    nonce: str,
    timestamp: str,
    request_uri: str,
    body: str = "",
) -> str:
    """
    Sign an outbound Tencent Meeting REST request.

    The HMAC-SHA256 hex digest is itself base64-encoded, which is what the
    X-TC-Signature header expects.
    """
    header_string = f"X-TC-Key={secret_id}&X-TC-Nonce={nonce}&X-TC-Timestamp={timestamp}"
    string_to_sign = f"{method.upper()}\n{header_string}\n{request_uri}\n{body}"
    digest = hmac.new(
        secret_key.encode("utf-8"),
        string_to_sign.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return base64.b64encode(digest.encode("utf-8")).decode("ascii")


def compute_lark_signature(timestamp: str, nonce: str, encrypt_key: str, body: str) -> str:
    return hashlib.sha256(f"{timestamp}{nonce}{encrypt_key}{body}".encode("utf-8")).hexdigest()


def verify_lark_signature(
    timestamp: str,
    nonce: str,
    encrypt_key: str,
    body: str,
    signature: Optional[str],
) -> bool:
    """Check the X-Lark-Signature header of an encrypted Lark callback."""
    if not isinstance(signature, str) or not signature:
        return False
    expected = compute_lark_signature(timestamp, nonce, encrypt_key, body)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))

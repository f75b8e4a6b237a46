"""HMAC-SHA256 signing of worker webhooks over canonical JSON.

Canonicalization contract ``v1`` (shared with the worker's signer):

- object keys sorted lexicographically at every nesting level,
- arrays keep their order,
- compact separators ``,`` and ``:`` with no whitespace,
- non-ASCII characters emitted as UTF-8, not ``\\u`` escapes,
- floats with an integral value rendered as integers (``1.0`` -> ``1``),
  matching JavaScript's ``JSON.stringify``,
- ``NaN`` and infinities rejected.

Any change to these rules must ship as a new version so that workers
signing with the old rules keep verifying.
"""

import hashlib
import hmac
import json
import math
from typing import Any

from loguru import logger

from takeout_import.lib.jobs.errors import AuthenticationError

CANONICALIZATION_VERSION = "v1"
SIGNATURE_HEADER = "X-Webhook-Signature"


def _normalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _normalize(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_normalize(item) for item in value]
    if isinstance(value, float):
        if not math.isfinite(value):
            msg = f"Cannot canonicalize non-finite number: {value!r}"
            raise ValueError(msg)
        if value.is_integer():
            return int(value)
    return value


def canonicalize(payload: Any) -> str:
    """Serialize ``payload`` deterministically, independent of key order.

    Raises:
        ValueError: If the payload contains NaN or infinity.
    """
    return json.dumps(
        _normalize(payload),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def compute_signature(secret: str, payload: Any) -> str:
    """Return the hex HMAC-SHA256 of the canonical form of ``payload``."""
    message = canonicalize(payload).encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def format_signature_header(secret: str, payload: Any) -> str:
    """Build a versioned header value (``v1=<hex>``) for ``payload``."""
    return f"{CANONICALIZATION_VERSION}={compute_signature(secret, payload)}"


def parse_signature_header(header: str | None) -> str:
    """Extract the hex digest from a signature header.

    Accepts a bare digest (treated as ``v1``) or ``<version>=<digest>``.

    Raises:
        AuthenticationError: If the header is absent or names another version.
    """
    if header is None or not header.strip():
        msg = "Missing webhook signature"
        raise AuthenticationError(msg)
    value = header.strip()
    if "=" not in value:
        return value
    version, _, digest = value.partition("=")
    if version != CANONICALIZATION_VERSION:
        msg = f"Unsupported webhook signature version: {version!r}"
        raise AuthenticationError(msg)
    return digest


def verify_signature(secret: str, payload: Any, header: str | None, *, job_id: str | None = None) -> None:
    """Check that ``header`` carries the signature of ``payload`` under ``secret``.

    Raises:
        AuthenticationError: If the signature is absent, malformed, or wrong.
    """
    received = parse_signature_header(header)
    expected = compute_signature(secret, payload)
    if not hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8")):
        logger.warning(f"Invalid webhook signature for job {job_id}: received={received} expected={expected}")
        msg = "Invalid webhook signature"
        raise AuthenticationError(msg)

"""Webhook library: signing and verification of worker progress callbacks.

Public API:
    - canonicalize: Key-order-independent JSON serialization (contract v1)
    - compute_signature / format_signature_header: Signer side
    - verify_signature: Verifier side, raises AuthenticationError
"""

from takeout_import.lib.webhook.signing import (
    CANONICALIZATION_VERSION,
    SIGNATURE_HEADER,
    canonicalize,
    compute_signature,
    format_signature_header,
    parse_signature_header,
    verify_signature,
)

__all__ = [
    "CANONICALIZATION_VERSION",
    "SIGNATURE_HEADER",
    "canonicalize",
    "compute_signature",
    "format_signature_header",
    "parse_signature_header",
    "verify_signature",
]

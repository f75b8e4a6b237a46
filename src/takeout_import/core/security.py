"""JWT token creation/validation and secret hashing.

Uses PyJWT for bearer tokens.  Temporary worker credentials are stored
only as SHA-256 digests.
"""

import hashlib
from datetime import UTC, datetime, timedelta

import jwt


def create_access_token(
    subject: str,
    secret_key: str,
    algorithm: str = "HS256",
    expires_minutes: int = 30,
) -> str:
    """Create a JWT access token.

    Args:
        subject: The token subject (the owner id).
        secret_key: Secret key for signing.
        algorithm: JWT signing algorithm.
        expires_minutes: Token expiration in minutes.

    Returns:
        The encoded JWT string.
    """
    expire = datetime.now(UTC) + timedelta(minutes=expires_minutes)
    payload = {
        "sub": subject,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(payload, secret_key, algorithm=algorithm)


def decode_token(
    token: str,
    secret_key: str,
    algorithm: str = "HS256",
) -> dict:
    """Decode and validate a JWT token.

    Args:
        token: The JWT string to decode.
        secret_key: Secret key used for signing.
        algorithm: JWT signing algorithm.

    Returns:
        The decoded token payload.

    Raises:
        jwt.ExpiredSignatureError: If the token has expired.
        jwt.InvalidTokenError: If the token is invalid.
    """
    return jwt.decode(token, secret_key, algorithms=[algorithm])


def hash_token(token: str) -> str:
    """Return the hex SHA-256 digest of a secret token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()

"""Temporary credential issuance for import workers.

Each job gets its own API key limited to what the worker needs to upload
photos and build albums.  Only the digest is stored; the secret goes to the
worker through its machine environment and nowhere else.
"""

import secrets
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from loguru import logger
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from takeout_import.core.security import hash_token
from takeout_import.models.api_key import ApiKey

WORKER_CREDENTIAL_NAME = "Google Photos Import (temporary)"


class Permission(StrEnum):
    """Scopes a temporary worker credential may carry (no administrative scope exists here)."""

    USER_READ = "user.read"
    ASSET_UPLOAD = "asset.upload"
    ASSET_READ = "asset.read"
    ALBUM_CREATE = "album.create"
    ALBUM_READ = "album.read"
    ALBUM_UPDATE = "album.update"
    ALBUM_ASSET_CREATE = "albumAsset.create"


WORKER_SCOPES: tuple[Permission, ...] = (
    Permission.USER_READ,
    Permission.ASSET_UPLOAD,
    Permission.ASSET_READ,
    Permission.ALBUM_CREATE,
    Permission.ALBUM_READ,
    Permission.ALBUM_UPDATE,
    Permission.ALBUM_ASSET_CREATE,
)


@dataclass(frozen=True)
class IssuedCredential:
    """A freshly minted credential. ``secret`` is only available at issue time."""

    id: str
    secret: str = field(repr=False)


class ApiKeyCredentialIssuer:
    """Issues and revokes temporary worker API keys in the ``api_keys`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def issue(self, owner_id: str, scopes: Iterable[str]) -> IssuedCredential:
        """Mint a credential for ``owner_id`` limited to ``scopes``.

        Raises:
            ValueError: If a scope is not a known worker permission.
        """
        permissions = [Permission(scope).value for scope in scopes]
        secret = secrets.token_urlsafe(32)
        key = ApiKey(
            owner_id=owner_id,
            name=WORKER_CREDENTIAL_NAME,
            key_hash=hash_token(secret),
            permissions=permissions,
        )
        async with self._session_factory() as session:
            session.add(key)
            await session.commit()
            await session.refresh(key)
        logger.info(f"Issued temporary credential {key.id} for owner {owner_id}")
        return IssuedCredential(id=key.id, secret=secret)

    async def revoke(self, owner_id: str, credential_id: str) -> bool:
        """Delete a credential.

        Returns:
            True if a credential was deleted, False if it was already gone.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ApiKey).where(ApiKey.id == credential_id, ApiKey.owner_id == owner_id)
            )
            await session.commit()
        revoked = bool(result.rowcount)
        if revoked:
            logger.info(f"Revoked temporary credential {credential_id}")
        else:
            logger.info(f"Temporary credential {credential_id} was already revoked")
        return revoked

"""Google Drive OAuth tokens per owner, kept in ``user_metadata``."""

from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, Field
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from takeout_import.models.user_metadata import UserMetadata

DRIVE_TOKENS_KEY = "google-drive-tokens"


class DriveTokens(BaseModel):
    """OAuth tokens granting read access to the owner's Google Drive."""

    access_token: str = Field(repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    expires_at: datetime | None = None


class DriveTokenStore:
    """Reads and writes an owner's Drive tokens."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, owner_id: str) -> DriveTokens | None:
        async with self._session_factory() as session:
            row = await session.get(UserMetadata, (owner_id, DRIVE_TOKENS_KEY))
            if row is None:
                return None
            return DriveTokens.model_validate(row.value)

    async def save(
        self,
        owner_id: str,
        *,
        access_token: str,
        refresh_token: str | None = None,
        expires_in: int | None = None,
    ) -> DriveTokens:
        """Store tokens from an OAuth exchange; ``expires_in`` is in seconds."""
        expires_at = datetime.now(UTC) + timedelta(seconds=expires_in) if expires_in else None
        tokens = DriveTokens(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at)
        async with self._session_factory() as session:
            await session.merge(
                UserMetadata(owner_id=owner_id, key=DRIVE_TOKENS_KEY, value=tokens.model_dump(mode="json"))
            )
            await session.commit()
        return tokens

    async def delete(self, owner_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(UserMetadata).where(UserMetadata.owner_id == owner_id, UserMetadata.key == DRIVE_TOKENS_KEY)
            )
            await session.commit()

    async def is_connected(self, owner_id: str) -> bool:
        return await self.get(owner_id) is not None

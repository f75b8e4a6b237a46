"""Durable key/value persistence of worker job records.

``SqlMetadataStore`` is the generic get/set/delete document store over the
``system_metadata`` table.  ``JobStore`` namespaces keys per job and is the
validation boundary: nothing untyped goes in or comes out.
"""

from typing import Any, Protocol

from loguru import logger
from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from takeout_import.lib.jobs.models import ImportJobRecord
from takeout_import.models.system_metadata import SystemMetadata

JOB_KEY_PREFIX = "import-worker-job:"


class MetadataStore(Protocol):
    """Atomic per-key document store."""

    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def set(self, key: str, value: dict[str, Any]) -> None: ...

    async def delete(self, key: str) -> None: ...


class SqlMetadataStore:
    """``MetadataStore`` backed by the ``system_metadata`` table.

    Each call runs in its own short transaction, so it is safe to use from
    background tasks that outlive the request that started them.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, key: str) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            row = await session.get(SystemMetadata, key)
            return dict(row.value) if row is not None else None

    async def set(self, key: str, value: dict[str, Any]) -> None:
        async with self._session_factory() as session:
            await session.merge(SystemMetadata(key=key, value=value))
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(SystemMetadata).where(SystemMetadata.key == key))
            await session.commit()


class JobStore:
    """Typed access to worker job records in a ``MetadataStore``."""

    def __init__(self, store: MetadataStore) -> None:
        self._store = store

    @staticmethod
    def key_for(job_id: str) -> str:
        return f"{JOB_KEY_PREFIX}{job_id}"

    async def get(self, job_id: str) -> ImportJobRecord | None:
        """Load and validate a job record.

        Raises:
            ValueError: If the stored document is not a valid job record.
        """
        data = await self._store.get(self.key_for(job_id))
        if data is None:
            return None
        try:
            return ImportJobRecord.model_validate(data)
        except ValidationError as exc:
            logger.error(f"Stored record for job {job_id} failed validation: {exc.error_count()} error(s)")
            msg = f"Stored record for job {job_id} is not a valid worker import job"
            raise ValueError(msg) from exc

    async def save(self, record: ImportJobRecord) -> None:
        await self._store.set(self.key_for(record.id), record.model_dump(mode="json"))

    async def delete(self, job_id: str) -> None:
        await self._store.delete(self.key_for(job_id))

"""ApiKey model: scoped API keys, including temporary keys minted for import workers."""

from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from takeout_import.models.base import Base, JSONType, UUIDMixin


class ApiKey(Base, UUIDMixin):
    """An API key; only the SHA-256 digest of the secret is stored."""

    __tablename__ = "api_keys"

    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    permissions: Mapped[list[str]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

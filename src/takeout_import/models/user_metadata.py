"""UserMetadata model: per-user key/value documents (e.g. Google Drive tokens)."""

from typing import Any

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from takeout_import.models.base import Base, JSONType


class UserMetadata(Base):
    """One JSON document per (owner, key)."""

    __tablename__ = "user_metadata"

    owner_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

"""ORM model registry: import all models so Alembic autogenerate discovers them."""

from takeout_import.models.api_key import ApiKey
from takeout_import.models.system_metadata import SystemMetadata
from takeout_import.models.user_metadata import UserMetadata

__all__ = [
    "ApiKey",
    "SystemMetadata",
    "UserMetadata",
]

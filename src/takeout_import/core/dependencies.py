"""FastAPI dependency injection for auth and the job orchestrator."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from takeout_import.core.config import Settings, get_settings
from takeout_import.core.security import decode_token
from takeout_import.services.orchestrator import ImportJobOrchestrator

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_owner(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> str:
    """Decode the bearer JWT and return its subject as the owner id.

    Raises:
        HTTPException: 401 if the token is missing or invalid.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception
    try:
        payload = decode_token(credentials.credentials, settings.jwt_secret_key, settings.jwt_algorithm)
        owner_id: str | None = payload.get("sub")
        if not owner_id:
            raise credentials_exception
    except Exception as exc:
        raise credentials_exception from exc
    return owner_id


def get_orchestrator(request: Request) -> ImportJobOrchestrator:
    """Return the orchestrator built during application startup."""
    return request.app.state.orchestrator

"""
Shared FastAPI dependencies for the trigger endpoints
"""
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..core.config import Settings, get_settings
from ..database import get_db
from ..email_service import EmailSender, get_email_sender

# Security scheme
security = HTTPBearer(auto_error=False)


def get_app_settings() -> Settings:
    return get_settings()


def get_sender(settings: Settings = Depends(get_app_settings)) -> EmailSender:
    return get_email_sender(settings)


async def require_admin_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_app_settings),
) -> None:
    """
    Require the configured ADMIN_API_KEY as a bearer token

    Raises:
        HTTPException: If the key is not configured, missing or wrong
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key is not configured",
        )

    if credentials is None or not secrets.compare_digest(credentials.credentials, settings.admin_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


__all__ = ["get_db", "get_app_settings", "get_sender", "require_admin_key"]

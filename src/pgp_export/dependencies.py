"""FastAPI dependencies for authentication and the source data store.

Mutating endpoints (running exports, saving key selections) require the
ADMIN_API_KEY from the environment:

    @router.post("/exports", dependencies=[Depends(require_admin)])
    async def run_export(...):
        ...
"""

import secrets
from typing import Annotated, Generator

import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pgp_export.config import settings
from pgp_export.database import DataStore

logger = structlog.get_logger(__name__)

# Security scheme for Swagger UI
security = HTTPBearer(
    scheme_name="Bearer Auth",
    description="Enter the ADMIN_API_KEY",
)


class AuthenticationError(HTTPException):
    """Raised when authentication fails."""

    def __init__(self, detail: str = "Invalid or missing API key"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "unauthorized", "message": detail},
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_api_key_from_header(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str:
    """Extract the API key from the Authorization: Bearer header."""
    if not credentials or not credentials.credentials:
        logger.warning("auth_missing_credentials")
        raise AuthenticationError("Missing or invalid credentials")

    return credentials.credentials


def verify_admin_key(api_key: str) -> bool:
    """Check the key against ADMIN_API_KEY (always False when not configured)."""
    if not settings.admin_api_key:
        logger.warning("auth_admin_key_not_configured")
        return False

    return secrets.compare_digest(api_key, settings.admin_api_key)


async def require_admin(
    api_key: Annotated[str, Depends(get_api_key_from_header)],
) -> str:
    """
    Dependency that requires admin-level access.

    Raises:
        AuthenticationError: If the key is not the admin key
    """
    if not verify_admin_key(api_key):
        logger.warning("auth_admin_required_failed")
        raise AuthenticationError("Admin API key required")

    return api_key


def get_store() -> Generator[DataStore, None, None]:
    """Source data store for one request."""
    store = DataStore()
    try:
        yield store
    finally:
        store.close()

import logging
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import config


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def is_staff(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> bool:
    """True for a valid staff key, or for everyone when no STAFF_API_KEY is configured."""
    if config.STAFF_API_KEY is None:
        return True
    return credentials is not None and secrets.compare_digest(
        credentials.credentials, config.STAFF_API_KEY
    )


def verify_staff_key(staff: bool = Depends(is_staff)) -> None:
    """Guard staff-only routes."""
    if not staff:
        logger.warning("Rejected staff request with missing or invalid API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

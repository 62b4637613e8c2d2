"""FastAPI dependencies for sessions and API key authentication."""

import hmac
import logging
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import get_session

logger = logging.getLogger(__name__)


async def require_api_key(
    x_api_key: Annotated[str | None, Header()] = None,
) -> None:
    """
    Check the X-API-Key header against the configured key.

    No configured key disables the check (local development).
    """
    expected = get_settings().api_key
    if not expected:
        return

    if not x_api_key or not hmac.compare_digest(x_api_key, expected):
        logger.warning("Rejected request with missing or invalid API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


# Type aliases for cleaner dependency injection
SessionDep = Annotated[AsyncSession, Depends(get_session)]

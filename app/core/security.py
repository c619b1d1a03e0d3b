"""API key protection for the generation endpoints."""

import logging

from fastapi import Depends
from fastapi import HTTPException
from fastapi.security import APIKeyHeader

from app.core.config import settings

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key")


async def verify_api_key(key: str = Depends(api_key_header)) -> bool:
    """FastAPI dependency checking the 'X-API-Key' header against ``settings.api_key``.

    Raises:
        HTTPException: 403 when the key does not match. A server without a
            configured key rejects every request.
    """
    if not settings.api_key:
        logger.critical(
            "CRITICAL: /api/generate requires an API key but no API_KEY is configured; "
            "every generation request will be rejected."
        )

    if key != settings.api_key:
        logger.warning("Rejected request with an invalid API key")
        raise HTTPException(status_code=403, detail="Invalid API Key")
    return True

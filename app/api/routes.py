import logging
from uuid import uuid4

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from app.core.security import Depends
from app.core.security import verify_api_key

# Generation-logic helpers -------------------------------------------------
from app.generation_logic.stream_orchestrator import _stream_generation_logic
from app.models.generation_models import GenerationRequest

# Configure module logger
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


@router.post("/generate", dependencies=[Depends(verify_api_key)])
async def generate(payload: GenerationRequest) -> StreamingResponse:
    """
    Generates a backend and a frontend for the described application.
    Streams back NDJSON events representing the generation progress.

    Stream Events:
    - `phase_transition`: The run entered a new phase.
    - `content_delta`: Generated text arrived for the current phase.
    - `file_detected`: The set of files being written changed (`writing` / `complete`).
    - `terminal`: Exactly one per run; `payload.success` tells the outcome.
    - `result`: Last line, the serialized generation result with all files.

    Requires a valid API key via the 'X-API-Key' header.
    """
    request_id = str(uuid4())
    logger.info(
        "[%s] /generate called for project %r (%d chars, preferred template: %s)",
        request_id,
        payload.project_id,
        len(payload.user_input),
        payload.preferred_template,
    )
    return StreamingResponse(
        _stream_generation_logic(payload),
        media_type="application/x-ndjson",
    )

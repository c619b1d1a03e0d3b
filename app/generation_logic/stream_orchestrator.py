import asyncio
import json
import logging
from typing import Any

from app.core.config import settings
from app.generation_logic.callbacks import GenerationCallbacks
from app.generation_logic.orchestrator import GenerationOrchestrator
from app.models.generation_models import GenerationRequest
from app.models.generation_models import ProgressEvent
from app.services.llm import LLMStreamingChannel
from app.services.template_cache import TemplateCache
from app.services.template_resolver import HttpTemplateResolver

__all__ = [
    "_build_orchestrator",
    "_create_stream_event",
    "_stream_generation_logic",
]

logger = logging.getLogger(__name__)

# Shared by every run of the process
_template_cache = TemplateCache(ttl=settings.template_cache_ttl)
_resolver: HttpTemplateResolver | None = None


# ---------------------------------------------------------------------------
# NDJSON event helper
# ---------------------------------------------------------------------------


def _create_stream_event(
    event_type: str,
    message: str | None = None,
    payload: dict[str, Any] | None = None,
    phase: str | None = None,
) -> str:
    """Serialize a progress event dict to an NDJSON line."""
    event: dict[str, Any] = {"type": event_type}
    if phase is not None:
        event["phase"] = phase
    if message is not None:
        event["message"] = message
    if payload is not None:
        event["payload"] = payload
    return json.dumps(event) + "\n"


def _build_orchestrator() -> GenerationOrchestrator:
    global _resolver
    if _resolver is None:
        _resolver = HttpTemplateResolver(settings, cache=_template_cache)
    return GenerationOrchestrator(LLMStreamingChannel(settings), _resolver, app_settings=settings)


# ---------------------------------------------------------------------------
# Streaming adapter
# ---------------------------------------------------------------------------


async def _stream_generation_logic(
    request: GenerationRequest,
    orchestrator: GenerationOrchestrator | None = None,
):
    """Run one generation and yield its progress events as NDJSON lines.

    The last line is always a ``result`` event carrying the serialized
    ``GenerationResult``.
    """
    orchestrator = orchestrator or _build_orchestrator()
    queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
    callbacks = GenerationCallbacks(on_progress=queue.put_nowait)

    task = asyncio.create_task(orchestrator.run(request, callbacks))
    task.add_done_callback(lambda _: queue.put_nowait(None))
    logger.info("[%s] Streaming generation started", request.project_id or "-")

    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            yield _create_stream_event(event.type, message=event.message, payload=event.payload, phase=event.phase.value)

        try:
            result = task.result()
        except Exception as e:
            logger.exception("[%s] Generation task crashed", request.project_id or "-")
            yield _create_stream_event("error", message=f"An unexpected server error occurred: {str(e)}")
            return
        yield _create_stream_event("result", payload=result.model_dump(mode="json"))
    finally:
        if not task.done():
            logger.info("[%s] Client disconnected, cancelling generation", request.project_id or "-")
            task.cancel()

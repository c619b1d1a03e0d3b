import json
import logging
import pathlib
import re
from collections.abc import Awaitable
from collections.abc import Callable
from typing import Any
from uuid import uuid4

import httpx
import jinja2
from openai import AsyncOpenAI
from openai import OpenAIError
from tenacity import RetryCallState
from tenacity import retry
from tenacity import stop_after_attempt
from tenacity import wait_exponential

from app.core.config import Settings
from app.core.config import settings as default_settings
from app.models.generation_models import PromptSpec
from app.models.generation_models import StreamEvent

# Configure module logger
logger = logging.getLogger(__name__)

EventHandler = Callable[[StreamEvent], Awaitable[None]]


# Custom exceptions for better error handling
class LLMError(Exception):
    """Raised when LLM call fails"""


class JSONParsingError(Exception):
    """Raised when JSON parsing fails"""


class StreamError(LLMError):
    """Raised when a streaming channel reports an error event."""


# --- Reusable Jinja2 Environment ---
PROMPT_DIR = pathlib.Path(__file__).parent / "prompt_templates"
env: jinja2.Environment | None = None
try:
    loader = jinja2.FileSystemLoader(PROMPT_DIR)
    env = jinja2.Environment(loader=loader, keep_trailing_newline=True)
    logger.info("Jinja2 environment initialized successfully for path: %s", PROMPT_DIR)
except Exception:
    logger.exception("Failed to initialize Jinja2 environment at %s", PROMPT_DIR)
    env = None


def render_prompt(template_name: str, /, **context: Any) -> str:
    """Render one of the bundled prompt templates."""
    if env is None:
        logger.error("Jinja2 environment not initialized for template %s", template_name)
        raise LLMError("Internal configuration error: Template environment not available.") from None
    try:
        return env.get_template(template_name).render(**context)
    except jinja2.TemplateNotFound:
        logger.error("Template not found: %s", template_name)
        raise LLMError(f"Internal configuration error: Template '{template_name}' not found.") from None


# ---------------------------------------------------------------
# Helper predicate for tenacity retry
# ---------------------------------------------------------------


def _should_retry_llm_call(retry_state: RetryCallState) -> bool:
    """Determines if a retry should occur based on the exception in RetryCallState."""
    if not retry_state.outcome:
        return False

    exc = retry_state.outcome.exception()
    if not exc:
        return False

    # Unwrap our custom LLMError to get to the original cause (e.g., OpenAIError)
    actual_exception = exc.__cause__ if isinstance(exc, LLMError) and exc.__cause__ else exc

    status = getattr(actual_exception, "status", None) or getattr(actual_exception, "status_code", None)
    if status in {429, 500, 502, 503, 504}:
        logger.debug("Retryable API error status %s detected. Retrying...", status)
        return True
    return False


# ---------------------------------------------------------------
# Streaming channel
# ---------------------------------------------------------------


class LLMStreamingChannel:
    """Streams one chat completion per request and reports it as channel events.

    Events are delivered in order through the awaited ``on_event`` handler:
    ``connected`` once the stream is open, one ``content_delta`` per non-empty
    chunk, then exactly one of ``complete`` or ``error``. Retryable HTTP errors
    are retried only while opening the stream, before any content is delivered.
    """

    def __init__(self, app_settings: Settings | None = None, client: AsyncOpenAI | None = None):
        self.settings = app_settings or default_settings
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            timeout_config = httpx.Timeout(
                self.settings.LLM_CONNECT_TIMEOUT,
                read=self.settings.LLM_READ_TIMEOUT,
            )
            self._client = AsyncOpenAI(
                base_url=self.settings.llm_base_url,
                api_key=self.settings.openrouter_api_key,
                default_headers={"X-Title": "codegen-orchestrator"},
                timeout=timeout_config,
                max_retries=0,  # retries are handled by tenacity before the first delta
            )
        return self._client

    @retry(
        wait=wait_exponential(multiplier=1, min=2, max=10),
        stop=stop_after_attempt(3),
        retry=_should_retry_llm_call,
        reraise=True,
    )  # type: ignore
    async def _open_stream(self, prompt_spec: PromptSpec, request_id: str) -> Any:
        model = self.settings.model_for(prompt_spec.endpoint)
        logger.info(
            "[%s] Opening %s stream with model %s (%d prompt chars)",
            request_id,
            prompt_spec.endpoint,
            model,
            prompt_spec.size,
        )
        try:
            return await self._get_client().chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": prompt_spec.system_prompt},
                    {"role": "user", "content": prompt_spec.user_prompt},
                ],
                max_tokens=self.settings.llm_max_tokens,
                temperature=self.settings.llm_temperature,
                stream=True,
            )
        except OpenAIError as e:
            logger.error("[%s] OpenAI API error while opening stream: %s", request_id, str(e))
            raise LLMError(f"OpenAI API error: {str(e)}") from e

    async def send(self, prompt_spec: PromptSpec, on_event: EventHandler, request_id: str | None = None) -> None:
        """Run one streaming generation, reporting every event to ``on_event``."""
        request_id = request_id or str(uuid4())
        try:
            stream = await self._open_stream(prompt_spec, request_id)
        except LLMError as e:
            await on_event(StreamEvent(type="error", message=str(e)))
            return

        await on_event(StreamEvent(type="connected"))
        chunks = 0
        try:
            async for chunk in stream:
                if not getattr(chunk, "choices", None):
                    continue
                delta = chunk.choices[0].delta
                content = getattr(delta, "content", None) if delta is not None else None
                if content:
                    chunks += 1
                    await on_event(StreamEvent(type="content_delta", content=content))
        except OpenAIError as e:
            logger.error("[%s] Stream interrupted after %d chunks: %s", request_id, chunks, str(e))
            await on_event(StreamEvent(type="error", message=f"Stream interrupted: {str(e)}"))
            return
        except httpx.HTTPError as e:
            logger.error("[%s] Transport error after %d chunks: %s", request_id, chunks, str(e))
            await on_event(StreamEvent(type="error", message=f"Transport error: {str(e)}"))
            return

        logger.debug("[%s] Stream complete after %d chunks", request_id, chunks)
        await on_event(StreamEvent(type="complete"))


# ---------------------------------------------------------------
# JSON extractor helper
# ---------------------------------------------------------------
def extract_json(text: str, request_id: str | None = None) -> dict:
    """Attempts to robustly extract and parse JSON from LLM responses, handling markdown fences and extraneous text."""
    request_id = request_id or str(uuid4())
    logger.debug("[%s] Attempting to parse JSON response, length: %d", request_id, len(text))

    if isinstance(text, dict):
        logger.info("[%s] Input is already a dictionary, no parsing needed.", request_id)
        return text

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        logger.warning("[%s] Initial JSON parse failed, attempting extraction strategies...", request_id)

    # Strategy 1: Markdown Code Fence Extraction
    match = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text, re.DOTALL)
    if match:
        extracted_block = match.group(1)
        try:
            result = json.loads(extracted_block)
            logger.info("[%s] Successfully parsed JSON from markdown code fence.", request_id)
            return result
        except json.JSONDecodeError:
            logger.warning("[%s] Failed to parse JSON from fenced block, trying next strategy...", request_id)

    # Strategy 2: Use JSONDecoder().raw_decode for first object/array
    decoder = json.JSONDecoder()
    obj_start = text.find("{")
    arr_start = text.find("[")
    if obj_start == -1 and arr_start == -1:
        logger.error("[%s] No JSON object or array marker found in response", request_id)
        raise JSONParsingError("No JSON object or array marker found in response")
    start_pos = min([pos for pos in [obj_start, arr_start] if pos != -1])
    try:
        obj, _ = decoder.raw_decode(text, start_pos)
        logger.info("[%s] Successfully parsed JSON using raw_decode.", request_id)
        return obj
    except json.JSONDecodeError as e:
        logger.error(
            "[%s] Failed to parse JSON using raw_decode: %s",
            request_id,
            str(e),
        )
    logger.error("[%s] All strategies to parse JSON from LLM response failed.", request_id)
    raise JSONParsingError("All strategies to parse JSON from LLM response failed.")

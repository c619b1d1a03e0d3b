"""Template selection and template content loading.

Template bundles live under a static base URL::

    {base}/templates/{name}.mo        backend template
    {base}/templates/{name}UI.tsx     frontend template
    {base}/backend_prompt.md          shared instructions
    {base}/frontend_prompt.md
    {base}/backend_rules.md           shared rules
    {base}/frontend_rules.md
"""

import asyncio
import logging

import httpx
from async_lru import alru_cache
from tenacity import retry
from tenacity import retry_if_exception
from tenacity import stop_after_attempt
from tenacity import wait_exponential

from app.core.config import Settings
from app.core.config import settings as default_settings
from app.models.generation_models import GenerationRequest
from app.models.generation_models import RouteResult
from app.models.generation_models import TemplateContent
from app.models.generation_models import TemplateDescriptor
from app.services.template_cache import TemplateCache

logger = logging.getLogger(__name__)

__all__ = [
    "HttpTemplateResolver",
    "StaticTemplateSelector",
    "TemplateNotFound",
]

SHARED_ASSETS = {
    "backend_instructions": "backend_prompt.md",
    "frontend_instructions": "frontend_prompt.md",
    "backend_rules": "backend_rules.md",
    "frontend_rules": "frontend_rules.md",
}


class TemplateNotFound(Exception):
    """Raised when a template (or the generic fallback) cannot be loaded."""


def _is_retryable_http_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in {429, 500, 502, 503, 504}
    return False


class StaticTemplateSelector:
    """Deterministic selector: always routes to the configured template."""

    def __init__(self, template_name: str | None = None, descriptor: TemplateDescriptor | None = None):
        self.template_name = template_name or default_settings.default_template
        self.descriptor = descriptor or TemplateDescriptor(
            name=self.template_name,
            description="Full-stack Motoko backend with a React frontend",
            complexity="medium",
        )

    async def select(self, request: GenerationRequest) -> RouteResult:
        return RouteResult(
            template_name=self.template_name,
            confidence=1.0,
            reasoning="Static template selection",
            descriptor=self.descriptor,
        )


class HttpTemplateResolver:
    """Resolves templates over HTTP, caching bundles process-wide.

    Shared instructions and rules are identical for every template and are
    cached per resolver for ``template_cache_ttl`` seconds; full bundles go
    into the ``TemplateCache``.
    """

    def __init__(
        self,
        app_settings: Settings | None = None,
        cache: TemplateCache | None = None,
        selector: StaticTemplateSelector | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = app_settings or default_settings
        self.base_url = self.settings.template_base_url.rstrip("/")
        self.cache = cache or TemplateCache(ttl=self.settings.template_cache_ttl)
        self.selector = selector or StaticTemplateSelector(self.settings.default_template)
        self._transport = transport
        self._fetch_shared = alru_cache(maxsize=16, ttl=self.settings.template_cache_ttl)(self._fetch_shared_asset)

    async def select(self, request: GenerationRequest) -> RouteResult:
        return await self.selector.select(request)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.template_fetch_timeout,
            transport=self._transport,
            follow_redirects=True,
        )

    @retry(
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        retry=retry_if_exception(_is_retryable_http_error),
        reraise=True,
    )  # type: ignore
    async def _get_text(self, url: str) -> str:
        async with self._client() as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.text

    async def _fetch_text(self, url: str, description: str) -> str:
        try:
            content = await self._get_text(url)
        except httpx.HTTPStatusError as e:
            logger.warning("%s unavailable at %s (HTTP %s)", description, url, e.response.status_code)
            raise TemplateNotFound(f"{description} unavailable (HTTP {e.response.status_code})") from e
        except httpx.HTTPError as e:
            logger.warning("%s could not be fetched from %s: %s", description, url, str(e))
            raise TemplateNotFound(f"{description} could not be fetched: {str(e)}") from e
        if not content.strip():
            raise TemplateNotFound(f"{description} is empty")
        logger.debug("Fetched %s (%d chars)", description, len(content))
        return content

    async def _fetch_shared_asset(self, filename: str) -> str:
        return await self._fetch_text(f"{self.base_url}/{filename}", f"Shared asset {filename}")

    async def _fetch_shared_assets(self) -> dict[str, str]:
        values = await asyncio.gather(*(self._fetch_shared(filename) for filename in SHARED_ASSETS.values()))
        return dict(zip(SHARED_ASSETS, values, strict=True))

    async def fetch(self, template_id: str) -> TemplateContent:
        """Load the full bundle for ``template_id``.

        Raises:
            TemplateNotFound: If any of the six components is missing or empty.
        """
        cached = self.cache.get(template_id)
        if cached is not None:
            logger.info("Using cached template %s", template_id)
            return cached

        logger.info("Fetching template %s from %s", template_id, self.base_url)
        backend_template, frontend_template, shared = await asyncio.gather(
            self._fetch_text(f"{self.base_url}/templates/{template_id}.mo", f"Backend template {template_id}"),
            self._fetch_text(f"{self.base_url}/templates/{template_id}UI.tsx", f"Frontend template {template_id}"),
            self._fetch_shared_assets(),
        )
        content = TemplateContent(
            name=template_id,
            backend_template=backend_template,
            frontend_template=frontend_template,
            **shared,
        )
        self.cache.set(template_id, content)
        logger.info(
            "Template %s fetched and cached (backend %d chars, frontend %d chars)",
            template_id,
            len(backend_template),
            len(frontend_template),
        )
        return content

    async def fetch_fallback(self, template_id: str | None = None) -> TemplateContent:
        """Load the generic instructions and rules without template code.

        Raises:
            TemplateNotFound: If any generic asset is unavailable.
        """
        logger.info("Fetching generic fallback prompts and rules from %s", self.base_url)
        shared = await self._fetch_shared_assets()
        return TemplateContent(name=template_id or "generic", **shared)

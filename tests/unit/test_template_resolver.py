import asyncio

import httpx
import pytest
from tenacity import wait_none

from app.core.config import Settings
from app.models.generation_models import GenerationRequest
from app.services.template_cache import TemplateCache
from app.services.template_resolver import HttpTemplateResolver
from app.services.template_resolver import StaticTemplateSelector
from app.services.template_resolver import TemplateNotFound

BASE = "https://templates.test/project"

ASSETS = {
    "/project/templates/Blog.mo": "actor Blog {}",
    "/project/templates/BlogUI.tsx": "export const Blog = () => null;",
    "/project/backend_prompt.md": "backend instructions for {{TEMPLATE_NAME}}",
    "/project/frontend_prompt.md": "frontend instructions",
    "/project/backend_rules.md": "backend rules",
    "/project/frontend_rules.md": "frontend rules",
}


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(HttpTemplateResolver._get_text.retry, "wait", wait_none())


@pytest.fixture
def served():
    """Mock transport serving ``ASSETS``; the dict and request log can be changed per test."""
    files = dict(ASSETS)
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request.url.path)
        status = files.get(("status", request.url.path))
        if status is not None:
            return httpx.Response(status)
        body = files.get(request.url.path)
        if body is None:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, text=body)

    return files, requests, httpx.MockTransport(handler)


def _resolver(transport):
    return HttpTemplateResolver(
        Settings(template_base_url=BASE + "/", default_template="Blog"),
        cache=TemplateCache(ttl=60),
        transport=transport,
    )


@pytest.mark.asyncio
async def test_fetch_loads_all_six_components(served):
    _, requests, transport = served
    content = await _resolver(transport).fetch("Blog")

    assert content.name == "Blog"
    assert content.backend_template == "actor Blog {}"
    assert content.frontend_template == "export const Blog = () => null;"
    assert content.backend_instructions == "backend instructions for {{TEMPLATE_NAME}}"
    assert content.frontend_rules == "frontend rules"
    assert sorted(requests) == sorted(ASSETS)


@pytest.mark.asyncio
async def test_fetch_uses_cache_on_second_call(served):
    _, requests, transport = served
    resolver = _resolver(transport)
    first = await resolver.fetch("Blog")
    count = len(requests)

    second = await resolver.fetch("Blog")

    assert second is first
    assert len(requests) == count


@pytest.mark.asyncio
async def test_missing_template_raises_not_found(served):
    _, _, transport = served
    with pytest.raises(TemplateNotFound, match="HTTP 404"):
        await _resolver(transport).fetch("Unknown")


@pytest.mark.asyncio
async def test_empty_component_raises_not_found(served):
    files, _, transport = served
    files["/project/templates/BlogUI.tsx"] = "   \n"
    with pytest.raises(TemplateNotFound, match="empty"):
        await _resolver(transport).fetch("Blog")


@pytest.mark.asyncio
async def test_transient_errors_are_retried(served):
    files, requests, transport = served
    attempts = {"n": 0}
    inner = transport

    def flaky(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/project/templates/Blog.mo" and attempts["n"] < 2:
            attempts["n"] += 1
            return httpx.Response(503)
        return inner.handler(request)

    content = await _resolver(httpx.MockTransport(flaky)).fetch("Blog")
    assert content.backend_template == "actor Blog {}"
    assert attempts["n"] == 2


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(served):
    files, requests, transport = served
    files[("status", "/project/templates/Blog.mo")] = 403
    with pytest.raises(TemplateNotFound):
        await _resolver(transport).fetch("Blog")
    assert requests.count("/project/templates/Blog.mo") == 1


@pytest.mark.asyncio
async def test_fetch_fallback_loads_shared_assets_only(served):
    _, requests, transport = served
    content = await _resolver(transport).fetch_fallback()

    assert content.name == "generic"
    assert content.backend_template == ""
    assert content.backend_rules == "backend rules"
    assert not any("/templates/" in path for path in requests)


@pytest.mark.asyncio
async def test_fetch_fallback_fails_when_shared_assets_missing(served):
    files, _, transport = served
    del files["/project/backend_rules.md"]
    with pytest.raises(TemplateNotFound):
        await _resolver(transport).fetch_fallback()


@pytest.mark.asyncio
async def test_static_selector_routes_to_configured_template():
    route = await StaticTemplateSelector("Blog").select(GenerationRequest(user_input="a blog"))
    assert route.template_name == "Blog"
    assert route.confidence == 1.0
    assert route.descriptor.name == "Blog"
    assert not route.is_ambiguous


@pytest.mark.asyncio
async def test_resolver_select_delegates_to_selector(served):
    _, _, transport = served
    route = await _resolver(transport).select(GenerationRequest(user_input="anything"))
    assert route.template_name == "Blog"


@pytest.mark.asyncio
async def test_shared_assets_are_cached_per_resolver(served):
    _, requests, transport = served
    resolver = _resolver(transport)
    await resolver.fetch_fallback()
    count = len(requests)

    await resolver.fetch_fallback()
    assert len(requests) == count

    await _resolver(transport).fetch_fallback()
    assert len(requests) == 2 * count


@pytest.mark.asyncio
async def test_shared_asset_cache_uses_configured_ttl(served):
    _, requests, transport = served
    resolver = HttpTemplateResolver(
        Settings(template_base_url=BASE, default_template="Blog", template_cache_ttl=0.05),
        cache=TemplateCache(ttl=60),
        transport=transport,
    )
    await resolver.fetch_fallback()
    count = len(requests)

    await asyncio.sleep(0.15)
    await resolver.fetch_fallback()

    assert len(requests) == 2 * count

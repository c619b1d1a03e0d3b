import logging
import re
from collections.abc import Awaitable
from collections.abc import Callable
from uuid import uuid4

from pydantic import ValidationError

from app.models.generation_models import CoreRequirements
from app.models.generation_models import GenerationRequest
from app.models.generation_models import MinimalArchitecture
from app.models.generation_models import Phase
from app.models.generation_models import ProjectMeta
from app.models.generation_models import ProjectSpec
from app.models.generation_models import PromptSpec
from app.models.generation_models import ScopeBoundaries
from app.models.generation_models import StreamEvent
from app.services.llm import JSONParsingError
from app.services.llm import StreamError
from app.services.llm import extract_json
from app.services.llm import render_prompt

logger = logging.getLogger(__name__)

__all__ = [
    "SpecInferencer",
    "analyze_complexity",
    "fallback_project_name",
    "generate_actor_name",
    "parse_spec",
]

MAX_NAME_CHARS = 50
VALID_COMPLEXITIES = ("simple", "medium", "complex")

_NAME_KEYWORDS = (
    (("todo", "task"), "Todo"),
    (("shop", "store", "ecommerce"), "Shop"),
    (("dashboard",), "Dashboard"),
    (("blog",), "Blog"),
    (("social", "network"), "Social"),
    (("chat", "message"), "Chat"),
    (("game",), "Game"),
    (("music",), "Music"),
    (("photo", "gallery"), "Gallery"),
    (("recipe", "food"), "Recipe"),
    (("fitness", "workout"), "Fitness"),
    (("travel",), "Travel"),
    (("finance", "money"), "Finance"),
)

_COMPLEXITY_INDICATORS = {
    "simple": ("hello world", "basic", "simple", "minimal", "quick", "demo", "todo", "calculator", "counter", "form", "button", "landing page"),
    "medium": ("dashboard", "crud", "authentication", "login", "signup", "gallery", "blog", "portfolio", "chart", "responsive", "api"),
    "complex": ("ecommerce", "marketplace", "social", "messaging", "real-time", "multi-user", "admin panel", "cms", "integration", "database", "microservices", "scalable", "enterprise"),
}
_FEATURE_KEYWORDS = ("with", "and", "including", "also", "plus", "that has", "authentication", "database", "real-time", "responsive")


def generate_actor_name(project_name: str) -> str:
    """PascalCase identifier for the backend actor: "Todo App" -> "TodoApp"."""
    cleaned = re.sub(r"[^a-zA-Z0-9\s]", "", project_name)
    joined = "".join(word[:1].upper() + word[1:].lower() for word in cleaned.split())
    return re.sub(r"^[^a-zA-Z]+", "", joined) or "Main"


def fallback_project_name(prompt: str) -> str:
    lowered = prompt.lower()
    keywords = [label for needles, label in _NAME_KEYWORDS if any(n in lowered for n in needles)]
    if keywords:
        return " ".join(keywords[:2]) + " App"
    return "New Project"


def analyze_complexity(prompt: str) -> str:
    lowered = prompt.lower().strip()
    for level, indicators in _COMPLEXITY_INDICATORS.items():
        if any(indicator in lowered for indicator in indicators):
            return level
    feature_count = sum(1 for k in _FEATURE_KEYWORDS if k in lowered)
    word_count = len(prompt.split())
    if word_count > 30 or feature_count > 3:
        return "complex"
    if word_count > 15 or feature_count > 1:
        return "medium"
    return "simple"


def _fallback_spec(user_input: str) -> ProjectSpec:
    name = user_input.strip()[:MAX_NAME_CHARS]
    return ProjectSpec(
        project_meta=ProjectMeta(
            name=name,
            actor_name=generate_actor_name(name),
            description=f"Application based on: {user_input}",
            complexity=analyze_complexity(user_input),
            user_intent=user_input,
        ),
        core_requirements=CoreRequirements(
            primary_goal="Build the requested application",
            essential_features=["core functionality"],
            explicit_requirements=["user requested features"],
        ),
        minimal_architecture=MinimalArchitecture(
            backend_entities=["main entity"],
            frontend_components=["main component"],
            key_interactions=["user interactions"],
        ),
        scope_boundaries=ScopeBoundaries(
            included=["requested features"],
            excluded=["enterprise features unless requested"],
        ),
    )


def parse_spec(text: str, user_input: str, request_id: str | None = None) -> ProjectSpec:
    """Parse the streamed specification, falling back to a minimal spec when unusable."""
    request_id = request_id or str(uuid4())
    try:
        data = extract_json(text, request_id)
    except JSONParsingError:
        logger.warning("[%s] Specification is not valid JSON, using fallback specification", request_id)
        return _fallback_spec(user_input)

    if not isinstance(data, dict) or "projectMeta" not in data or "coreRequirements" not in data:
        logger.warning("[%s] Specification is missing required sections, using fallback specification", request_id)
        return _fallback_spec(user_input)

    try:
        spec = ProjectSpec.model_validate(data)
    except ValidationError as e:
        logger.warning("[%s] Specification failed validation (%d errors), using fallback", request_id, e.error_count())
        return _fallback_spec(user_input)

    meta = spec.project_meta
    meta.name = meta.name.strip()[:MAX_NAME_CHARS] or fallback_project_name(user_input)
    meta.actor_name = generate_actor_name(meta.name)
    if meta.complexity not in VALID_COMPLEXITIES:
        meta.complexity = analyze_complexity(user_input)
    return spec


class SpecInferencer:
    """Infers a ``ProjectSpec`` with one streaming call."""

    def __init__(self, channel):
        self.channel = channel

    def build_prompt(self, request: GenerationRequest) -> PromptSpec:
        return PromptSpec(
            phase=Phase.SPEC,
            endpoint="spec",
            system_prompt=render_prompt("spec_system.jinja2"),
            user_prompt=render_prompt("spec_prompt.jinja2", user_input=request.user_input),
        )

    async def infer(
        self,
        request: GenerationRequest,
        on_event: Callable[[StreamEvent], Awaitable[None]] | None = None,
        request_id: str | None = None,
    ) -> ProjectSpec:
        """Stream the specification and parse it.

        Raises:
            StreamError: If the channel reports an error event.
        """
        request_id = request_id or str(uuid4())
        chunks: list[str] = []
        failure: list[str] = []

        async def handle(event: StreamEvent) -> None:
            if event.type == "content_delta":
                chunks.append(event.content)
            elif event.type == "error":
                failure.append(event.message or "unknown stream error")
            if on_event is not None:
                await on_event(event)

        logger.info("[%s] Inferring project specification", request_id)
        await self.channel.send(self.build_prompt(request), handle, request_id=request_id)
        if failure:
            logger.error("[%s] Specification stream failed: %s", request_id, failure[0])
            raise StreamError(f"Specification stream failed: {failure[0]}")

        spec = parse_spec("".join(chunks), request.user_input, request_id)
        logger.info("[%s] Specification ready for project %r", request_id, spec.name)
        return spec

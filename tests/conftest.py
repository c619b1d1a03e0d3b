import asyncio
import json

import pytest

from app.core.config import Settings
from app.models.generation_models import GenerationRequest
from app.models.generation_models import RouteResult
from app.models.generation_models import StreamEvent
from app.models.generation_models import TemplateContent
from app.models.generation_models import TemplateDescriptor
from app.services.template_resolver import TemplateNotFound

TODO_SPEC = {
    "projectMeta": {
        "name": "Todo Tracker",
        "actorName": "TodoTracker",
        "description": "Track todos",
        "complexity": "simple",
        "userIntent": "a todo app",
    },
    "coreRequirements": {
        "primaryGoal": "Manage todos",
        "essentialFeatures": ["add todo", "list todos"],
        "explicitRequirements": [],
    },
    "minimalArchitecture": {
        "backendEntities": ["Todo"],
        "frontendComponents": ["TodoList"],
        "keyInteractions": ["add"],
    },
}

BACKEND_OUTPUT = """Here is the backend.

```motoko
// src/backend/src/main.mo
actor TodoTracker {
  type Todo = { id : Nat; title : Text; done : Bool };
  public query func getTodos() : async [Todo] { [] };
  public shared(msg) func addTodo(title : Text) : async Nat { 0 };
  public func toggleTodo(id : Nat) : async Bool { true };
}
```
"""

FRONTEND_OUTPUT = """Now the frontend.

```tsx
// src/frontend/src/App.tsx
export default function App() {
  return <div>Todo Tracker</div>;
}
```

```css
/* src/frontend/src/index.css */
body { margin: 0; }
```
"""


def chunked(text: str, size: int = 23) -> list[StreamEvent]:
    """connected, the text as content deltas of ``size`` chars, complete."""
    events = [StreamEvent(type="connected")]
    events += [StreamEvent(type="content_delta", content=text[i : i + size]) for i in range(0, len(text), size)]
    events.append(StreamEvent(type="complete"))
    return events


class FakeChannel:
    """Scripted streaming channel keyed by endpoint ("spec", "backend", "frontend").

    ``late`` maps an endpoint to ``(delay, event)`` pairs delivered through
    ``loop.call_later`` after ``send`` has returned.
    """

    def __init__(self, scripts: dict[str, list[StreamEvent]], late: dict[str, list] | None = None):
        self.scripts = scripts
        self.late = late or {}
        self.prompts = []

    async def send(self, prompt_spec, on_event, request_id=None):
        self.prompts.append(prompt_spec)
        for event in self.scripts.get(prompt_spec.endpoint, []):
            await on_event(event)
            await asyncio.sleep(0)
        loop = asyncio.get_running_loop()
        for delay, event in self.late.get(prompt_spec.endpoint, []):
            loop.call_later(delay, lambda e=event: asyncio.ensure_future(on_event(e)))

    def endpoints(self) -> list[str]:
        return [p.endpoint for p in self.prompts]


class FakeResolver:
    def __init__(
        self,
        route: RouteResult | None = None,
        content: TemplateContent | None = None,
        fetch_error: Exception | None = None,
        fallback_error: Exception | None = None,
    ):
        self.route = route or RouteResult(
            template_name="SimpleCrudAuth",
            confidence=0.9,
            reasoning="auth + crud keywords",
            descriptor=TemplateDescriptor(name="SimpleCrudAuth", description="CRUD with auth", requires_auth=True),
        )
        self.content = content or TemplateContent(
            name="SimpleCrudAuth",
            backend_template="actor Template {}",
            frontend_template="export const Template = () => null;",
            backend_instructions="Build for {{USER_REQUIREMENTS}} using {{TEMPLATE_NAME}}.\n{{PROJECT_SPEC}}",
            frontend_instructions="Frontend for {{TEMPLATE_NAME}}.\n{{BACKEND_CONTEXT}}",
            backend_rules="backend rules",
            frontend_rules="frontend rules",
        )
        self.fetch_error = fetch_error
        self.fallback_error = fallback_error
        self.calls: list[tuple] = []

    async def select(self, request):
        self.calls.append(("select", request.user_input))
        return self.route

    async def fetch(self, template_id):
        self.calls.append(("fetch", template_id))
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.content

    async def fetch_fallback(self):
        self.calls.append(("fetch_fallback",))
        if self.fallback_error is not None:
            raise self.fallback_error
        return TemplateContent(
            name="generic",
            backend_instructions="generic backend prompt",
            frontend_instructions="generic frontend prompt",
            backend_rules="generic backend rules",
            frontend_rules="generic frontend rules",
        )


@pytest.fixture
def fast_settings():
    return Settings(
        callback_drain_delay=0.01,
        backend_grace_period=0.05,
        phase_transition_delay=0.0,
        telemetry_enabled=True,
        openrouter_api_key="sk-test",
    )


@pytest.fixture
def todo_request():
    return GenerationRequest(
        user_input="Build a todo app with login where users can add and list todos",
        project_id="proj-1",
        project_name="New Project",
    )


@pytest.fixture
def make_channel():
    """Fixture factory building a FakeChannel; defaults to the Todo Tracker scripts."""

    def _make_channel(spec=None, backend=None, frontend=None, late=None):
        scripts = {
            "spec": chunked(json.dumps(TODO_SPEC)) if spec is None else spec,
            "backend": chunked(BACKEND_OUTPUT) if backend is None else backend,
            "frontend": chunked(FRONTEND_OUTPUT) if frontend is None else frontend,
        }
        return FakeChannel(scripts, late=late)

    return _make_channel


@pytest.fixture
def make_resolver():
    return FakeResolver


@pytest.fixture
def not_found():
    def _not_found(message="missing"):
        return TemplateNotFound(message)

    return _not_found


@pytest.fixture
def stream_text():
    return chunked


@pytest.fixture
def backend_output():
    return BACKEND_OUTPUT


@pytest.fixture
def todo_spec_json():
    return json.dumps(TODO_SPEC)

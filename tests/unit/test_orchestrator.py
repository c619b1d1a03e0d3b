import asyncio

import pytest

from app.generation_logic.callbacks import GenerationCallbacks
from app.generation_logic.orchestrator import PROJECT_SPEC_FILE
from app.generation_logic.orchestrator import GenerationOrchestrator
from app.models.generation_models import GenerationRequest
from app.models.generation_models import Phase
from app.models.generation_models import RouteResult
from app.models.generation_models import StreamEvent
from app.services.prompt_builder import CONTEXT_UNAVAILABLE

MAIN_MO_BLOCK = (
    "```motoko\n// src/backend/src/main.mo\nactor TodoTracker {\n"
    "  public query func getTodos() : async [Text] { [] };\n}\n```\n"
)


class Recorder:
    """Collects every hook invocation of a run."""

    def __init__(self):
        self.progress = []
        self.file_updates = []
        self.streaming_updates = []
        self.spec_events = []
        self.selected = []
        self.fallbacks = []
        self.integrations = []
        self.renames = []

    def callbacks(self, **overrides):
        hooks = dict(
            on_progress=self.progress.append,
            on_file_update=lambda files, transcript: self.file_updates.append(dict(files)),
            on_streaming_update=self.streaming_updates.append,
            on_spec_progress=self.spec_events.append,
            on_template_selected=lambda name, descriptor, confidence: self.selected.append((name, confidence)),
            on_template_fallback=lambda name, reason: self.fallbacks.append((name, reason)),
            on_platform_files_integration=self._integrate,
            get_project_name=lambda project_id: "New Project",
            rename_project=self._rename,
        )
        hooks.update(overrides)
        return GenerationCallbacks(**hooks)

    async def _integrate(self, project_id, project_name, files):
        self.integrations.append((project_id, sorted(files)))

    async def _rename(self, project_id, new_name):
        self.renames.append((project_id, new_name))
        return True

    @property
    def terminals(self):
        return [e for e in self.progress if e.type == "terminal"]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def orchestrator_for(fast_settings):
    def _orchestrator_for(channel, resolver):
        return GenerationOrchestrator(channel, resolver, app_settings=fast_settings)

    return _orchestrator_for


@pytest.mark.asyncio
async def test_successful_run_produces_backend_frontend_and_spec(
    orchestrator_for, make_channel, make_resolver, recorder, todo_request
):
    channel = make_channel()
    resolver = make_resolver()

    result = await orchestrator_for(channel, resolver).run(todo_request, recorder.callbacks())

    assert result.success is True
    assert result.error is None
    assert list(result.files) == [
        "src/backend/src/main.mo",
        "src/frontend/src/App.tsx",
        "src/frontend/src/index.css",
        PROJECT_SPEC_FILE,
    ]
    assert list(result.backend_files) == ["src/backend/src/main.mo"]
    assert list(result.frontend_files) == ["src/frontend/src/App.tsx", "src/frontend/src/index.css"]
    assert '"name": "Todo Tracker"' in result.files[PROJECT_SPEC_FILE]
    assert result.spec.name == "Todo Tracker"
    assert result.spec.project_meta.actor_name == "TodoTracker"
    assert result.template_used.name == "SimpleCrudAuth"
    assert result.template_used.confidence == pytest.approx(0.9)
    assert result.template_used.was_user_selected is False
    assert result.diagnostics.backend_entry_point_found is True
    assert result.diagnostics.project_renamed_to == "Todo Tracker"
    assert recorder.renames == [("proj-1", "Todo Tracker")]
    assert recorder.selected == [("SimpleCrudAuth", 0.9)]
    assert recorder.integrations and recorder.integrations[0][0] == "proj-1"
    assert channel.endpoints() == ["spec", "backend", "frontend"]
    frontend_prompt = channel.prompts[-1].system_prompt
    assert "3 method signatures available" in frontend_prompt
    assert "  - getTodos: () -> (vec Todo) (query)" in frontend_prompt
    assert "  - addTodo: (title: text) -> (nat) (update)" in frontend_prompt
    assert "  - toggleTodo: (id: nat) -> (bool) (update)" in frontend_prompt
    assert "## Generation complete" in result.final_content
    assert result.final_content.startswith("```json\n")


@pytest.mark.asyncio
async def test_phase_transitions_are_ordered_and_terminal_is_last(
    orchestrator_for, make_channel, make_resolver, recorder, todo_request
):
    await orchestrator_for(make_channel(), make_resolver()).run(todo_request, recorder.callbacks())

    transitions = [e.phase for e in recorder.progress if e.type == "phase_transition"]
    assert transitions == [
        Phase.SPEC,
        Phase.ROUTING,
        Phase.FETCHING,
        Phase.BACKEND_GEN,
        Phase.BACKEND_ANALYSIS,
        Phase.FRONTEND_GEN,
        Phase.CONFIGURING,
        Phase.FINALIZING,
    ]
    assert len(recorder.terminals) == 1
    assert recorder.progress[-1].type == "terminal"
    assert recorder.progress[-1].payload == {"success": True, "file_count": 4}


@pytest.mark.asyncio
async def test_backend_context_reaches_frontend_prompt(orchestrator_for, make_channel, make_resolver, todo_request):
    channel = make_channel()
    await orchestrator_for(channel, make_resolver()).run(todo_request)

    frontend_prompt = channel.prompts[-1]
    assert "getTodos" in frontend_prompt.system_prompt
    assert "TodoTracker" in frontend_prompt.system_prompt
    assert CONTEXT_UNAVAILABLE not in frontend_prompt.system_prompt
    assert frontend_prompt.user_prompt.startswith("Build frontend for: Todo Tracker")


@pytest.mark.asyncio
async def test_frontend_extraction_ignores_backend_text(
    orchestrator_for, make_channel, make_resolver, todo_request, stream_text, backend_output
):
    # The backend stream ends inside an unclosed block
    backend = backend_output + "\n```motoko\n// src/backend/src/Types.mo\ntype Id = Nat;\n"
    result = await orchestrator_for(make_channel(backend=stream_text(backend)), make_resolver()).run(todo_request)

    assert result.success is True
    assert list(result.frontend_files) == ["src/frontend/src/App.tsx", "src/frontend/src/index.css"]
    assert "src/backend/src/Types.mo" not in result.files


@pytest.mark.asyncio
async def test_preferred_template_bypasses_selection(orchestrator_for, make_channel, make_resolver, todo_request):
    resolver = make_resolver()
    request = todo_request.model_copy(update={"preferred_template": "SimpleCrudAuth"})

    result = await orchestrator_for(make_channel(), resolver).run(request)

    assert result.success is True
    assert all(call[0] != "select" for call in resolver.calls)
    assert result.template_used.was_user_selected is True
    assert result.template_used.confidence == 1.0


@pytest.mark.asyncio
async def test_template_fallback_is_recoverable(
    orchestrator_for, make_channel, make_resolver, recorder, todo_request, not_found
):
    channel = make_channel()
    resolver = make_resolver(fetch_error=not_found("Backend template SimpleCrudAuth unavailable (HTTP 404)"))

    result = await orchestrator_for(channel, resolver).run(todo_request, recorder.callbacks())

    assert result.success is True
    assert result.diagnostics.fallback_used is True
    assert result.diagnostics.fallback.original_template == "SimpleCrudAuth"
    assert result.template_used.fallback_used is True
    assert recorder.fallbacks == [("SimpleCrudAuth", "Backend template SimpleCrudAuth unavailable (HTTP 404)")]
    assert [e.error_type for e in result.diagnostics.recoverable_errors] == ["FetchingError"]
    assert "TEMPLATE FALLBACK NOTICE" in channel.prompts[1].system_prompt
    assert "generic backend prompt" in channel.prompts[1].system_prompt
    assert "=== BACKEND CONTEXT ===" in channel.prompts[2].system_prompt


@pytest.mark.asyncio
async def test_template_and_fallback_failure_is_fatal(
    orchestrator_for, make_channel, make_resolver, recorder, todo_request, not_found
):
    channel = make_channel()
    resolver = make_resolver(fetch_error=not_found(), fallback_error=not_found("generic assets missing"))

    result = await orchestrator_for(channel, resolver).run(todo_request, recorder.callbacks())

    assert result.success is False
    assert result.error.phase is Phase.FETCHING
    assert result.error.error_type == "FetchingError"
    assert result.files == {}
    assert channel.endpoints() == ["spec"]
    assert len(recorder.terminals) == 1
    assert recorder.terminals[0].phase is Phase.FAILED
    assert recorder.terminals[0].payload == {"success": False, "phase": "fetching", "error_type": "FetchingError"}


@pytest.mark.asyncio
async def test_spec_stream_error_is_fatal(orchestrator_for, make_channel, make_resolver, recorder, todo_request):
    spec = [StreamEvent(type="connected"), StreamEvent(type="error", message="rate limited")]
    result = await orchestrator_for(make_channel(spec=spec), make_resolver()).run(todo_request, recorder.callbacks())

    assert result.success is False
    assert result.error.phase is Phase.SPEC
    assert result.error.error_type == "SpecificationError"
    assert "rate limited" in result.error.message
    assert len(recorder.terminals) == 1


@pytest.mark.asyncio
async def test_unparseable_spec_uses_fallback_specification(
    orchestrator_for, make_channel, make_resolver, todo_request, stream_text
):
    result = await orchestrator_for(make_channel(spec=stream_text("I cannot produce JSON today")), make_resolver()).run(
        todo_request
    )
    assert result.success is True
    assert result.spec.name == todo_request.user_input[:50].strip()


@pytest.mark.asyncio
async def test_ambiguous_route_fails_with_questions(orchestrator_for, make_channel, make_resolver, recorder, todo_request):
    route = RouteResult(
        template_name="SimpleCrudAuth",
        confidence=0.3,
        clarification_questions=["Do users need to log in?"],
    )
    channel = make_channel()
    result = await orchestrator_for(channel, make_resolver(route=route)).run(todo_request, recorder.callbacks())

    assert result.success is False
    assert result.error.error_type == "RoutingError"
    assert result.diagnostics.clarification_questions == ["Do users need to log in?"]
    assert channel.endpoints() == ["spec"]
    assert len(recorder.terminals) == 1


@pytest.mark.asyncio
async def test_backend_without_files_fails_after_grace_period(
    orchestrator_for, make_channel, make_resolver, recorder, todo_request, stream_text
):
    channel = make_channel(backend=stream_text("Sorry, I can only describe the backend in prose."))
    result = await orchestrator_for(channel, make_resolver()).run(todo_request, recorder.callbacks())

    assert result.success is False
    assert result.error.phase is Phase.BACKEND_GEN
    assert result.error.error_type == "BackendGenerationError"
    assert result.diagnostics.backend_grace_recheck_used is True
    assert channel.endpoints() == ["spec", "backend"]
    assert len(recorder.terminals) == 1


@pytest.mark.asyncio
async def test_backend_grace_recheck_picks_up_late_deltas(
    orchestrator_for, make_channel, make_resolver, todo_request, stream_text
):
    late = {"backend": [(0.01, StreamEvent(type="content_delta", content=MAIN_MO_BLOCK))]}
    channel = make_channel(backend=stream_text("Working on it.\n"), late=late)

    result = await orchestrator_for(channel, make_resolver()).run(todo_request)

    assert result.success is True
    assert result.diagnostics.backend_grace_recheck_used is True
    assert list(result.backend_files) == ["src/backend/src/main.mo"]


@pytest.mark.asyncio
async def test_missing_entry_point_is_only_a_warning(
    orchestrator_for, make_channel, make_resolver, todo_request, stream_text
):
    backend = "```motoko\n// src/backend/src/Todos.mo\nactor Todos {\n  public func add() : async () {};\n}\n```\n"
    result = await orchestrator_for(make_channel(backend=stream_text(backend)), make_resolver()).run(todo_request)

    assert result.success is True
    assert result.diagnostics.backend_entry_point_found is False


@pytest.mark.asyncio
async def test_frontend_stream_error_keeps_backend_files(
    orchestrator_for, make_channel, make_resolver, recorder, todo_request
):
    frontend = [StreamEvent(type="connected"), StreamEvent(type="error", message="connection reset")]
    result = await orchestrator_for(make_channel(frontend=frontend), make_resolver()).run(todo_request, recorder.callbacks())

    assert result.success is False
    assert result.error.phase is Phase.FRONTEND_GEN
    assert list(result.files) == ["src/backend/src/main.mo"]
    assert recorder.renames == []
    assert len(recorder.terminals) == 1


@pytest.mark.asyncio
async def test_backend_analysis_failure_degrades_frontend_prompt(
    orchestrator_for, make_channel, make_resolver, todo_request
):
    class ExplodingExtractor:
        async def extract(self, *args, **kwargs):
            raise RuntimeError("parser crashed")

    channel = make_channel()
    orchestrator = orchestrator_for(channel, make_resolver())
    orchestrator.context_extractor = ExplodingExtractor()

    result = await orchestrator.run(todo_request)

    assert result.success is True
    assert [e.error_type for e in result.diagnostics.recoverable_errors] == ["BackendAnalysisError"]
    assert CONTEXT_UNAVAILABLE in channel.prompts[-1].system_prompt


@pytest.mark.asyncio
async def test_post_processing_failures_are_recoverable(
    orchestrator_for, make_channel, make_resolver, recorder, todo_request
):
    def broken_integration(project_id, project_name, files):
        raise RuntimeError("platform offline")

    callbacks = recorder.callbacks(on_platform_files_integration=broken_integration)
    result = await orchestrator_for(make_channel(), make_resolver()).run(todo_request, callbacks)

    assert result.success is True
    assert [(e.phase, e.error_type) for e in result.diagnostics.recoverable_errors] == [
        (Phase.CONFIGURING, "PostProcessingError")
    ]
    assert recorder.renames == [("proj-1", "Todo Tracker")]


@pytest.mark.asyncio
async def test_project_with_custom_name_is_not_renamed(
    orchestrator_for, make_channel, make_resolver, recorder, todo_request
):
    callbacks = recorder.callbacks(get_project_name=lambda project_id: "My Own Name")
    result = await orchestrator_for(make_channel(), make_resolver()).run(todo_request, callbacks)

    assert result.success is True
    assert recorder.renames == []
    assert result.diagnostics.project_renamed_to is None


@pytest.mark.asyncio
async def test_failing_progress_hook_does_not_affect_run(orchestrator_for, make_channel, make_resolver, todo_request):
    def broken_progress(event):
        raise RuntimeError("ui gone")

    result = await orchestrator_for(make_channel(), make_resolver()).run(
        todo_request, GenerationCallbacks(on_progress=broken_progress)
    )
    assert result.success is True


@pytest.mark.asyncio
async def test_late_deltas_after_terminal_are_suppressed(
    orchestrator_for, make_channel, make_resolver, recorder, todo_request
):
    late_block = "```tsx\n// src/frontend/src/Late.tsx\nexport const Late = () => null;\n```\n"
    late = {"frontend": [(0.08, StreamEvent(type="content_delta", content=late_block))]}
    channel = make_channel(late=late)

    result = await orchestrator_for(channel, make_resolver()).run(todo_request, recorder.callbacks())
    progress_count = len(recorder.progress)
    update_count = len(recorder.file_updates)

    await asyncio.sleep(0.15)

    assert result.success is True
    assert "src/frontend/src/Late.tsx" not in result.files
    assert len(recorder.progress) == progress_count
    assert len(recorder.file_updates) == update_count
    assert len(recorder.terminals) == 1


@pytest.mark.asyncio
async def test_late_deltas_after_fatal_error_are_suppressed(
    orchestrator_for, make_channel, make_resolver, recorder, todo_request
):
    late_block = "```tsx\n// src/frontend/src/Late.tsx\nexport const Late = () => null;\n```\n"
    frontend = [StreamEvent(type="connected"), StreamEvent(type="error", message="connection reset")]
    late = {"frontend": [(0.05, StreamEvent(type="content_delta", content=late_block))]}
    channel = make_channel(frontend=frontend, late=late)

    result = await orchestrator_for(channel, make_resolver()).run(todo_request, recorder.callbacks())
    progress_count = len(recorder.progress)
    update_count = len(recorder.file_updates)

    await asyncio.sleep(0.12)

    assert result.success is False
    assert result.error.phase is Phase.FRONTEND_GEN
    assert "src/frontend/src/Late.tsx" not in result.files
    assert len(recorder.progress) == progress_count
    assert len(recorder.file_updates) == update_count
    assert len(recorder.terminals) == 1
    assert recorder.terminals[0].phase is Phase.FAILED


@pytest.mark.asyncio
async def test_concurrent_runs_are_isolated(orchestrator_for, make_channel, make_resolver, todo_request):
    orchestrator = orchestrator_for(make_channel(), make_resolver())
    other = GenerationRequest(user_input="A second request", project_id="proj-2", project_name="Other")

    first, second = await asyncio.gather(orchestrator.run(todo_request), orchestrator.run(other))

    assert first.success and second.success
    assert first.run_id != second.run_id
    assert list(first.files) == list(second.files)


@pytest.mark.asyncio
async def test_slow_callbacks_still_get_one_terminal(orchestrator_for, make_channel, make_resolver, todo_request):
    progress = []

    async def slow_progress(event):
        await asyncio.sleep(0.001)
        progress.append(event)

    async def slow_file_update(files, transcript):
        await asyncio.sleep(0.002)

    callbacks = GenerationCallbacks(on_progress=slow_progress, on_file_update=slow_file_update)
    result = await orchestrator_for(make_channel(), make_resolver()).run(todo_request, callbacks)

    assert result.success is True
    assert [e.type for e in progress].count("terminal") == 1
    assert progress[-1].type == "terminal"

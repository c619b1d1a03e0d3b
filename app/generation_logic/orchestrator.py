"""Phase sequencer for project generation runs."""

import asyncio
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from uuid import uuid4

from app.core.config import Settings
from app.core.config import settings as default_settings
from app.core.exceptions import BackendAnalysisError
from app.core.exceptions import BackendGenerationError
from app.core.exceptions import FetchingError
from app.core.exceptions import FrontendGenerationError
from app.core.exceptions import GenerationError
from app.core.exceptions import PostProcessingError
from app.core.exceptions import RoutingError
from app.core.exceptions import SpecificationError
from app.generation_logic.callbacks import GenerationCallbacks
from app.generation_logic.callbacks import call_hook
from app.generation_logic.callbacks import notify
from app.generation_logic.completion_guard import CompletionGuard
from app.generation_logic.phase_runner import PhaseRunner
from app.generation_logic.state import GenerationState
from app.models.generation_models import ErrorInfo
from app.models.generation_models import FallbackInfo
from app.models.generation_models import GenerationDiagnostics
from app.models.generation_models import GenerationRequest
from app.models.generation_models import GenerationResult
from app.models.generation_models import Phase
from app.models.generation_models import ProgressEvent
from app.models.generation_models import RouteResult
from app.models.generation_models import StreamEvent
from app.models.generation_models import TemplateDescriptor
from app.models.generation_models import TemplateUsage
from app.services import telemetry
from app.services.backend_context import BackendContextExtractor
from app.services.file_extractor import ProgressiveFileExtractor
from app.services.file_extractor import is_backend_file
from app.services.file_extractor import is_frontend_file
from app.services.llm import JSONParsingError
from app.services.llm import LLMError
from app.services.prompt_builder import PromptBuilder
from app.services.spec_inference import SpecInferencer
from app.services.template_resolver import TemplateNotFound

logger = logging.getLogger(__name__)

__all__ = ["GenerationOrchestrator", "PROJECT_SPEC_FILE"]

PROJECT_SPEC_FILE = "project-spec.json"

PHASE_MESSAGES = {
    Phase.SPEC: "Analyzing your request and building a project specification...",
    Phase.ROUTING: "Selecting the best template for your project...",
    Phase.FETCHING: "Loading template content...",
    Phase.BACKEND_GEN: "Generating backend code...",
    Phase.BACKEND_ANALYSIS: "Analyzing backend interface...",
    Phase.FRONTEND_GEN: "Generating frontend code...",
    Phase.CONFIGURING: "Configuring project files...",
    Phase.FINALIZING: "Finalizing project...",
    Phase.DONE: "Project generation complete.",
}


class GenerationOrchestrator:
    """Runs the generation phase sequence.

    Collaborators are injected; the orchestrator itself keeps no per-run state,
    so one instance may serve concurrent runs.
    """

    def __init__(
        self,
        channel,
        resolver,
        spec_inferencer: SpecInferencer | None = None,
        context_extractor: BackendContextExtractor | None = None,
        prompt_builder: PromptBuilder | None = None,
        file_extractor: ProgressiveFileExtractor | None = None,
        app_settings: Settings | None = None,
    ):
        self.channel = channel
        self.resolver = resolver
        self.spec_inferencer = spec_inferencer or SpecInferencer(channel)
        self.context_extractor = context_extractor or BackendContextExtractor()
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.file_extractor = file_extractor or ProgressiveFileExtractor()
        self.settings = app_settings or default_settings

    async def run(self, request: GenerationRequest, callbacks: GenerationCallbacks | None = None) -> GenerationResult:
        """Generate a project for ``request``.

        Never raises for generation failures: the returned result carries
        ``success=False`` and the error, and exactly one terminal progress event
        is emitted either way.
        """
        generation_run = _GenerationRun(self, request, callbacks or GenerationCallbacks())
        return await generation_run.execute()


class _GenerationRun:
    """State and step logic of a single run."""

    def __init__(self, orchestrator: GenerationOrchestrator, request: GenerationRequest, callbacks: GenerationCallbacks):
        self.o = orchestrator
        self.settings = orchestrator.settings
        self.request = request
        self.callbacks = callbacks
        self.run_id = str(uuid4())
        self.state = GenerationState(run_id=self.run_id)
        self.guard = CompletionGuard(drain_delay=self.settings.callback_drain_delay, run_id=self.run_id)
        self.diagnostics = GenerationDiagnostics()
        self.runner = PhaseRunner(
            orchestrator.channel,
            self.state,
            self.guard,
            self._emit,
            callbacks=callbacks,
            extractor=orchestrator.file_extractor,
            max_prompt_chars=self.settings.max_prompt_chars,
        )
        self.was_user_selected = False
        self.routing_time = 0.0
        self.fetching_time = 0.0

    # ------------------------------------------------------------------
    # Event plumbing
    # ------------------------------------------------------------------

    async def _emit(self, event: ProgressEvent) -> None:
        with self.guard.callback() as allowed:
            if not allowed:
                return
            await notify(self.callbacks.on_progress, event, run_id=self.run_id, name="on_progress")

    async def _notify(self, hook: Any, *args: Any, name: str) -> None:
        with self.guard.callback() as allowed:
            if not allowed:
                return
            await notify(hook, *args, run_id=self.run_id, name=name)

    async def _advance(self, phase: Phase) -> None:
        self.state.advance(phase)
        logger.debug("[%s] Phase -> %s", self.run_id, phase.value)
        await self._emit(ProgressEvent(type="phase_transition", phase=phase, message=PHASE_MESSAGES.get(phase)))

    async def _pause(self) -> None:
        if self.settings.phase_transition_delay > 0:
            await asyncio.sleep(self.settings.phase_transition_delay)

    @contextmanager
    def _translate_errors(self, error_cls: type[GenerationError], action: str) -> Iterator[None]:
        try:
            yield
        except GenerationError:
            raise
        except (LLMError, JSONParsingError, TemplateNotFound) as e:
            logger.error("[%s] %s failed: %s", self.run_id, action, str(e))
            raise error_cls(f"{action} failed: {str(e)}") from e
        except Exception as e:
            logger.exception("[%s] Unexpected error during %s", self.run_id, action.lower())
            raise error_cls(f"Unexpected error during {action.lower()}: {str(e)}") from e

    def _record_recoverable(self, error: GenerationError) -> None:
        info = ErrorInfo(phase=self._error_phase(error), error_type=type(error).__name__, message=str(error))
        logger.warning("[%s] Recoverable %s in %s: %s", self.run_id, info.error_type, info.phase.value, info.message)
        self.state.recoverable_errors.append(info)

    def _error_phase(self, error: GenerationError) -> Phase:
        try:
            return Phase(error.phase)
        except ValueError:
            return self.state.phase

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def execute(self) -> GenerationResult:
        logger.info(
            "[%s] Starting generation for project %r (%d chars of input)",
            self.run_id,
            self.request.project_id,
            len(self.request.user_input),
        )
        try:
            await self._infer_spec()
            await self._route()
            await self._fetch_template()
            backend_files = await self._generate_backend()
            await self._analyze_backend(backend_files)
            await self._generate_frontend()
            await self._post_process()
            return await self._finalize()
        except GenerationError as e:
            return await self._fail(e)
        except Exception as e:
            logger.exception("[%s] Unexpected error in phase %s", self.run_id, self.state.phase.value)
            return await self._fail(GenerationError(f"Unexpected error: {str(e)}", phase=self.state.phase.value))

    async def _infer_spec(self) -> None:
        await self._advance(Phase.SPEC)

        async def forward(event: StreamEvent) -> None:
            with self.guard.callback() as allowed:
                if not allowed:
                    return
                if event.type == "content_delta":
                    self.state.accumulated_text[Phase.SPEC] = self.state.accumulated_text.get(Phase.SPEC, "") + event.content
                await notify(self.callbacks.on_spec_progress, event, run_id=self.run_id, name="on_spec_progress")

        with self._translate_errors(SpecificationError, "Specification inference"):
            spec = await self.o.spec_inferencer.infer(self.request, on_event=forward, request_id=self.run_id)
        self.state.spec = spec
        self.state.transcript += f"```json\n{spec.to_json()}\n```\n\n"
        await self._notify(self.callbacks.on_streaming_update, self.state.transcript, name="on_streaming_update")

    async def _route(self) -> None:
        await self._advance(Phase.ROUTING)
        started = time.monotonic()
        preferred = (self.request.preferred_template or "").strip()
        if preferred:
            route = RouteResult(
                template_name=preferred,
                confidence=1.0,
                reasoning="Template selected by the user",
                descriptor=TemplateDescriptor(name=preferred),
            )
            self.was_user_selected = True
        else:
            with self._translate_errors(RoutingError, "Template selection"):
                route = await self.o.resolver.select(self.request)
            if route.is_ambiguous:
                self.diagnostics.clarification_questions = list(route.clarification_questions)
                raise RoutingError(
                    "Template selection needs clarification",
                    clarification_questions=route.clarification_questions,
                )

        descriptor = route.descriptor or TemplateDescriptor(name=route.template_name)
        self.state.route = route
        self.state.selected_template = descriptor
        self.state.route_confidence = route.confidence
        self.diagnostics.route_confidence = route.confidence
        self.routing_time = time.monotonic() - started
        logger.info(
            "[%s] Template %s selected (confidence %.2f, user selected: %s)",
            self.run_id,
            descriptor.name,
            route.confidence,
            self.was_user_selected,
        )
        await self._notify(
            self.callbacks.on_template_selected,
            descriptor.name,
            descriptor,
            route.confidence,
            name="on_template_selected",
        )

    async def _fetch_template(self) -> None:
        await self._advance(Phase.FETCHING)
        started = time.monotonic()
        name = self.state.selected_template.name
        try:
            content = await self.o.resolver.fetch(name)
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.warning("[%s] Template %s unavailable (%s), falling back to generic prompts", self.run_id, name, reason)
            try:
                content = await self.o.resolver.fetch_fallback()
            except Exception as fallback_error:
                logger.error("[%s] Generic fallback unavailable: %s", self.run_id, str(fallback_error))
                raise FetchingError(
                    f"Template {name} could not be loaded ({reason}) and the generic fallback failed: {fallback_error}"
                ) from fallback_error
            self.state.fallback = FallbackInfo(original_template=name, reason=reason)
            self._record_recoverable(FetchingError(f"Template {name} unavailable: {reason}"))
            await self._notify(self.callbacks.on_template_fallback, name, reason, name="on_template_fallback")

        self.state.template_content = content
        self.fetching_time = time.monotonic() - started

    async def _generate_backend(self) -> dict[str, str]:
        await self._advance(Phase.BACKEND_GEN)
        await self._pause()
        state = self.state
        with self._translate_errors(BackendGenerationError, "Backend generation"):
            prompt = self.o.prompt_builder.build_backend(
                self.request.user_input,
                state.spec,
                state.template_content,
                state.selected_template,
                state.route,
                fallback=state.fallback,
            )
            output = await self.runner.run_phase(prompt, is_backend_file)

        files = output.files
        if not files:
            logger.warning(
                "[%s] Backend produced no files, re-checking in %.1fs",
                self.run_id,
                self.settings.backend_grace_period,
            )
            self.diagnostics.backend_grace_recheck_used = True
            await asyncio.sleep(self.settings.backend_grace_period)
            files = output.recheck()
            if not files:
                raise BackendGenerationError("Backend generation produced no files")

        entry_points = set(self.settings.backend_entry_points)
        found = any(name.rsplit("/", 1)[-1] in entry_points for name in files)
        self.diagnostics.backend_entry_point_found = found
        if not found:
            logger.warning("[%s] Backend entry point %s not found among %d files", self.run_id, sorted(entry_points), len(files))
        return files

    async def _analyze_backend(self, backend_files: dict[str, str]) -> None:
        await self._advance(Phase.BACKEND_ANALYSIS)
        project_name = (self.state.spec.name if self.state.spec else "") or self.request.project_name
        context = None
        try:
            with self._translate_errors(BackendAnalysisError, "Backend analysis"):
                context = await self.o.context_extractor.extract(
                    backend_files,
                    project_name,
                    verifier=self.callbacks.verify_backend_interface,
                    request_id=self.run_id,
                )
        except BackendAnalysisError as e:
            self._record_recoverable(e)

        if context is not None:
            context.template_name = self.state.selected_template.name
            context.routing_confidence = self.state.route_confidence
            self.diagnostics.interface_verified = context.verified
            logger.info(
                "[%s] Backend context: %d methods, %d data models (verified: %s)",
                self.run_id,
                len(context.method_signatures),
                len(context.data_models),
                context.verified,
            )
        else:
            logger.info("[%s] No backend context available, frontend prompt will degrade", self.run_id)
        self.state.backend_context = context

    async def _generate_frontend(self) -> None:
        await self._advance(Phase.FRONTEND_GEN)
        await self._pause()
        state = self.state
        with self._translate_errors(FrontendGenerationError, "Frontend generation"):
            prompt = self.o.prompt_builder.build_frontend(
                self.request.user_input,
                state.spec,
                state.template_content,
                state.selected_template,
                state.route,
                state.backend_context,
                fallback=state.fallback,
            )
            output = await self.runner.run_phase(prompt, is_frontend_file)
        if not output.files:
            logger.warning("[%s] Frontend generation produced no files", self.run_id)

    async def _post_process(self) -> None:
        await self._advance(Phase.CONFIGURING)
        try:
            with self._translate_errors(PostProcessingError, "Platform file integration"), self.guard.callback():
                await call_hook(
                    self.callbacks.on_platform_files_integration,
                    self.request.project_id,
                    self.request.project_name,
                    dict(self.state.all_files),
                )
        except PostProcessingError as e:
            self._record_recoverable(e)

        try:
            with self._translate_errors(PostProcessingError, "Project rename"), self.guard.callback():
                await self._maybe_rename()
        except PostProcessingError as e:
            self._record_recoverable(e)

    async def _maybe_rename(self) -> None:
        spec = self.state.spec
        if spec is None or self.callbacks.rename_project is None:
            return
        current = self.request.project_name
        if self.callbacks.get_project_name is not None:
            current = await call_hook(self.callbacks.get_project_name, self.request.project_id) or current

        default_name = self.settings.default_project_name
        new_name = spec.name.strip()
        if current != default_name or not new_name or new_name == default_name:
            return
        renamed = await call_hook(self.callbacks.rename_project, self.request.project_id, new_name)
        if renamed:
            self.diagnostics.project_renamed_to = new_name
            logger.info("[%s] Project %s renamed to %r", self.run_id, self.request.project_id, new_name)
        else:
            logger.warning("[%s] Rename of project %s to %r was rejected", self.run_id, self.request.project_id, new_name)

    # ------------------------------------------------------------------
    # Terminal handling
    # ------------------------------------------------------------------

    def _completion_summary(self) -> str:
        state = self.state
        elapsed = time.monotonic() - state.started_at
        template = state.selected_template.name if state.selected_template else "none"
        if state.fallback is not None:
            template += " (generic fallback)"
        return (
            "\n\n## Generation complete\n\n"
            f"- Project: {state.spec.name if state.spec else self.request.project_name}\n"
            f"- Template: {template}\n"
            f"- Backend files: {len(state.files_for(Phase.BACKEND_GEN))}\n"
            f"- Frontend files: {len(state.files_for(Phase.FRONTEND_GEN))}\n"
            f"- Total files: {len(state.all_files)}\n"
            f"- Build time: {elapsed:.1f}s\n"
        )

    def _build_result(self, success: bool) -> GenerationResult:
        state = self.state
        diagnostics = self.diagnostics
        diagnostics.fallback_used = state.fallback is not None
        diagnostics.fallback = state.fallback
        diagnostics.recoverable_errors = list(state.recoverable_errors)
        diagnostics.rejected_overwrites = list(state.rejected_overwrites)
        diagnostics.timings = {phase.value: timing for phase, timing in state.timings.items()}

        template_used = None
        if state.selected_template is not None:
            template_used = TemplateUsage(
                name=state.selected_template.name,
                confidence=state.route_confidence,
                routing_time=self.routing_time,
                fetching_time=self.fetching_time,
                was_user_selected=self.was_user_selected,
                fallback_used=state.fallback is not None,
            )
        return GenerationResult(
            success=success,
            run_id=self.run_id,
            files=dict(state.all_files),
            backend_files=state.files_for(Phase.BACKEND_GEN),
            frontend_files=state.files_for(Phase.FRONTEND_GEN),
            spec=state.spec,
            template_used=template_used,
            final_content=state.transcript,
            error=state.error,
            diagnostics=diagnostics,
        )

    async def _finalize(self) -> GenerationResult:
        await self._advance(Phase.FINALIZING)
        state = self.state
        if state.spec is not None:
            state.merge_files(Phase.FINALIZING, {PROJECT_SPEC_FILE: state.spec.to_json()}, supersede=True)
        state.transcript += self._completion_summary()
        await self._notify(self.callbacks.on_file_update, dict(state.all_files), state.transcript, name="on_file_update")

        state.advance(Phase.DONE)
        result = self._build_result(success=True)
        await self._terminate(
            ProgressEvent(
                type="terminal",
                phase=Phase.DONE,
                message=PHASE_MESSAGES[Phase.DONE],
                payload={"success": True, "file_count": len(result.files)},
            ),
            result,
        )
        logger.info("[%s] Generation finished with %d files", self.run_id, len(result.files))
        return result

    async def _fail(self, error: GenerationError) -> GenerationResult:
        phase = self._error_phase(error)
        if isinstance(error, RoutingError) and error.clarification_questions:
            self.diagnostics.clarification_questions = list(error.clarification_questions)
        info = ErrorInfo(phase=phase, error_type=type(error).__name__, message=str(error))
        logger.error("[%s] Generation failed in %s: %s", self.run_id, phase.value, info.message, exc_info=False)
        self.state.fail(info)
        result = self._build_result(success=False)
        await self._terminate(
            ProgressEvent(
                type="terminal",
                phase=Phase.FAILED,
                message=info.message,
                payload={"success": False, "phase": phase.value, "error_type": info.error_type},
            ),
            result,
        )
        return result

    async def _terminate(self, event: ProgressEvent, result: GenerationResult) -> None:
        if self.guard.latch():
            await notify(self.callbacks.on_progress, event, run_id=self.run_id, name="on_progress")
        else:
            logger.warning("[%s] Terminal event already emitted, suppressing %s", self.run_id, event.phase.value)
        await self.guard.drain()
        if self.settings.telemetry_enabled:
            telemetry.log_snapshot(self.state, result)

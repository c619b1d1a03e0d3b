"""Runs one streaming generation phase."""

import logging
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field

from app.generation_logic.callbacks import GenerationCallbacks
from app.generation_logic.callbacks import notify
from app.generation_logic.completion_guard import CompletionGuard
from app.generation_logic.state import GenerationState
from app.models.generation_models import Phase
from app.models.generation_models import ProgressEvent
from app.models.generation_models import PromptSpec
from app.models.generation_models import StreamEvent
from app.services.file_extractor import ProgressiveFileExtractor
from app.services.llm import LLMError
from app.services.llm import StreamError

logger = logging.getLogger(__name__)

__all__ = ["PhaseOutput", "PhaseRunner", "PromptTooLargeError"]

FileFilter = Callable[[str], bool]
ProgressEmitter = Callable[[ProgressEvent], Awaitable[None]]


class PromptTooLargeError(LLMError):
    """Raised before opening a channel when the assembled prompt exceeds the limit."""


@dataclass
class PhaseOutput:
    phase: Phase
    files: dict[str, str]
    full_text: str
    event_count: int
    _recheck: Callable[[], dict[str, str]] = field(repr=False, default=dict)

    def recheck(self) -> dict[str, str]:
        """Re-run extraction over the phase accumulator, including late deltas."""
        self.files = self._recheck()
        return self.files


class PhaseRunner:
    """Executes phases of one run against a streaming channel.

    Text is accumulated per phase and only the current phase's text is fed to
    the extractor. Events that arrive after the channel call returned still
    extend the phase accumulator (see :meth:`PhaseOutput.recheck`) but no
    longer notify anyone.
    """

    def __init__(
        self,
        channel,
        state: GenerationState,
        guard: CompletionGuard,
        emit: ProgressEmitter,
        callbacks: GenerationCallbacks | None = None,
        extractor: ProgressiveFileExtractor | None = None,
        max_prompt_chars: int = 400_000,
    ):
        self.channel = channel
        self.state = state
        self.guard = guard
        self.emit = emit
        self.callbacks = callbacks or GenerationCallbacks()
        self.extractor = extractor or ProgressiveFileExtractor()
        self.max_prompt_chars = max_prompt_chars

    def _extract(self, phase: Phase, accept_file: FileFilter) -> tuple[dict[str, str], dict[str, str]]:
        result = self.extractor.detect(self.state.accumulated_text.get(phase, ""))
        complete = {name: content for name, content in result.complete.items() if accept_file(name)}
        in_progress = {name: content for name, content in result.in_progress.items() if accept_file(name)}
        return complete, in_progress

    def _collect(self, phase: Phase, accept_file: FileFilter) -> dict[str, str]:
        complete, _ = self._extract(phase, accept_file)
        self.state.merge_files(phase, complete)
        return self.state.files_for(phase)

    async def run_phase(self, prompt_spec: PromptSpec, accept_file: FileFilter) -> PhaseOutput:
        """Stream one phase and return its extracted files.

        Raises:
            PromptTooLargeError: If the prompt exceeds ``max_prompt_chars``.
            StreamError: If the channel reports an error event.
        """
        phase = prompt_spec.phase
        run_id = self.state.run_id
        if prompt_spec.size > self.max_prompt_chars:
            raise PromptTooLargeError(
                f"{phase.value} prompt is {prompt_spec.size} chars, limit is {self.max_prompt_chars}"
            )

        self.state.accumulated_text.setdefault(phase, "")
        file_status: dict[str, str] = {}
        outcome: dict[str, str | None] = {"status": None, "error": None}
        counters = {"events": 0}
        sealed = False

        async def handle(event: StreamEvent) -> None:
            with self.guard.callback() as allowed:
                if not allowed:
                    logger.debug("[%s] Dropped %s event after completion", run_id, event.type)
                    return
                if sealed:
                    if event.type == "content_delta":
                        self.state.accumulated_text[phase] = self.state.accumulated_text.get(phase, "") + event.content
                    return

                counters["events"] += 1
                self.state.stream_event_count += 1
                if event.type == "connected":
                    logger.debug("[%s] %s stream connected", run_id, phase.value)
                elif event.type == "content_delta":
                    await self._on_delta(phase, event.content, accept_file, file_status)
                elif event.type == "complete":
                    outcome["status"] = "complete"
                elif event.type == "error":
                    outcome["status"] = "error"
                    outcome["error"] = event.message or "unknown stream error"

        logger.info("[%s] Starting %s stream (%d prompt chars)", run_id, phase.value, prompt_spec.size)
        try:
            await self.channel.send(prompt_spec, handle, request_id=run_id)
        finally:
            sealed = True

        if outcome["status"] == "error":
            logger.error("[%s] %s stream failed: %s", run_id, phase.value, outcome["error"])
            raise StreamError(str(outcome["error"]))
        if outcome["status"] is None:
            logger.warning("[%s] %s stream ended without a completion event", run_id, phase.value)

        files = self._collect(phase, accept_file)
        logger.info(
            "[%s] %s stream finished: %d events, %d files",
            run_id,
            phase.value,
            counters["events"],
            len(files),
        )
        return PhaseOutput(
            phase=phase,
            files=files,
            full_text=self.state.accumulated_text.get(phase, ""),
            event_count=counters["events"],
            _recheck=lambda: self._collect(phase, accept_file),
        )

    async def _on_delta(
        self,
        phase: Phase,
        content: str,
        accept_file: FileFilter,
        file_status: dict[str, str],
    ) -> None:
        run_id = self.state.run_id
        self.state.append_delta(phase, content)
        complete, in_progress = self._extract(phase, accept_file)
        self.state.merge_files(phase, complete)

        status = {name: "complete" for name in complete}
        status.update({name: "writing" for name in in_progress if name not in status})
        await self.emit(ProgressEvent(type="content_delta", phase=phase, payload={"length": len(content)}))
        if status != file_status:
            file_status.clear()
            file_status.update(status)
            await self.emit(ProgressEvent(type="file_detected", phase=phase, payload=dict(status)))

        current_files = {**self.state.all_files, **in_progress}
        await notify(self.callbacks.on_file_update, current_files, self.state.transcript, run_id=run_id, name="on_file_update")
        await notify(self.callbacks.on_streaming_update, self.state.transcript, run_id=run_id, name="on_streaming_update")

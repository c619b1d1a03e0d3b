"""Per-run mutable state of a generation run."""

import logging
import time
from dataclasses import dataclass
from dataclasses import field

from app.models.generation_models import BackendContext
from app.models.generation_models import ErrorInfo
from app.models.generation_models import FallbackInfo
from app.models.generation_models import Phase
from app.models.generation_models import PhaseTiming
from app.models.generation_models import ProjectSpec
from app.models.generation_models import RouteResult
from app.models.generation_models import TemplateContent
from app.models.generation_models import TemplateDescriptor

logger = logging.getLogger(__name__)

_ORDER = {phase: index for index, phase in enumerate(Phase)}
TERMINAL_PHASES = (Phase.DONE, Phase.FAILED)


class InvalidTransition(RuntimeError):
    """Raised on a backwards or post-terminal phase transition."""


@dataclass
class GenerationState:
    """Owned by exactly one orchestrator run and never shared or persisted."""

    run_id: str
    phase: Phase = Phase.INIT
    accumulated_text: dict[Phase, str] = field(default_factory=dict)
    transcript: str = ""
    extracted_files: dict[Phase, dict[str, str]] = field(default_factory=dict)
    all_files: dict[str, str] = field(default_factory=dict)
    file_owner: dict[str, Phase] = field(default_factory=dict)
    spec: ProjectSpec | None = None
    route: RouteResult | None = None
    selected_template: TemplateDescriptor | None = None
    route_confidence: float = 0.0
    template_content: TemplateContent | None = None
    fallback: FallbackInfo | None = None
    backend_context: BackendContext | None = None
    timings: dict[Phase, PhaseTiming] = field(default_factory=dict)
    error: ErrorInfo | None = None
    recoverable_errors: list[ErrorInfo] = field(default_factory=list)
    rejected_overwrites: list[str] = field(default_factory=list)
    stream_event_count: int = 0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def advance(self, target: Phase) -> None:
        """Move forward to ``target``, closing the timing of the current phase."""
        if target is Phase.FAILED:
            raise InvalidTransition("use fail() to enter the failed phase")
        if self.is_terminal or _ORDER[target] <= _ORDER[self.phase]:
            raise InvalidTransition(f"cannot move from {self.phase.value} to {target.value}")
        now = time.monotonic()
        current = self.timings.get(self.phase)
        if current is not None and current.end is None:
            current.end = now
        self.phase = target
        self.timings[target] = PhaseTiming(start=now)

    def fail(self, error: ErrorInfo) -> None:
        if self.error is not None:
            logger.warning("[%s] Ignoring second fatal error in %s: %s", self.run_id, error.phase.value, error.message)
            return
        if self.phase is Phase.DONE:
            raise InvalidTransition("cannot fail a completed run")
        current = self.timings.get(self.phase)
        if current is not None and current.end is None:
            current.end = time.monotonic()
        self.error = error
        self.phase = Phase.FAILED

    def append_delta(self, phase: Phase, content: str) -> str:
        """Append to the phase accumulator and the transcript; return the phase text."""
        text = self.accumulated_text.get(phase, "") + content
        self.accumulated_text[phase] = text
        self.transcript += content
        return text

    def merge_files(self, phase: Phase, files: dict[str, str], supersede: bool = False) -> list[str]:
        """Merge a phase's files into ``all_files``.

        A name owned by an earlier phase is kept unless ``supersede`` is set.
        Returns the rejected names.
        """
        rejected: list[str] = []
        phase_files = self.extracted_files.setdefault(phase, {})
        for name, content in files.items():
            owner = self.file_owner.get(name)
            if owner is not None and owner is not phase and not supersede:
                if name not in self.rejected_overwrites:
                    logger.warning(
                        "[%s] %s tried to overwrite %s written by %s; keeping the original",
                        self.run_id,
                        phase.value,
                        name,
                        owner.value,
                    )
                    self.rejected_overwrites.append(name)
                rejected.append(name)
                continue
            phase_files[name] = content
            self.all_files[name] = content
            self.file_owner[name] = phase
        return rejected

    def files_for(self, phase: Phase) -> dict[str, str]:
        return dict(self.extracted_files.get(phase, {}))

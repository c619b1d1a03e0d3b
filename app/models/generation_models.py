"""Data models shared by the generation pipeline, its services and the HTTP layer."""

import time
from enum import Enum
from typing import Any
from typing import Literal

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator


class Phase(str, Enum):
    """Pipeline position of a generation run. Order of declaration is the forward order."""

    INIT = "init"
    SPEC = "spec"
    ROUTING = "routing"
    FETCHING = "fetching"
    BACKEND_GEN = "backend_gen"
    BACKEND_ANALYSIS = "backend_analysis"
    FRONTEND_GEN = "frontend_gen"
    CONFIGURING = "configuring"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


class CompletionStage(str, Enum):
    RUNNING = "running"
    RESULT_EMITTED = "result_emitted"
    CALLBACKS_DRAINED = "callbacks_drained"


# ---------------------------------------------------------------------------
# Request / specification
# ---------------------------------------------------------------------------


class GenerationRequest(BaseModel):
    """A single project generation request."""

    user_input: str = Field(..., min_length=1, description="Free-text description of the application.")
    project_id: str = Field(default="", description="Opaque identifier of the project being generated.")
    project_name: str = Field(default="", description="Current display name of the project.")
    message_id: str | None = Field(default=None)
    preferred_template: str | None = Field(default=None, description="Bypass template selection.")


class ProjectMeta(BaseModel):
    name: str = ""
    actor_name: str = Field(default="", alias="actorName")
    description: str = ""
    complexity: str = "medium"
    user_intent: str = Field(default="", alias="userIntent")

    model_config = {"populate_by_name": True}


class CoreRequirements(BaseModel):
    primary_goal: str = Field(default="", alias="primaryGoal")
    essential_features: list[str] = Field(default_factory=list, alias="essentialFeatures")
    explicit_requirements: list[str] = Field(default_factory=list, alias="explicitRequirements")

    model_config = {"populate_by_name": True}


class MinimalArchitecture(BaseModel):
    backend_entities: list[str] = Field(default_factory=list, alias="backendEntities")
    frontend_components: list[str] = Field(default_factory=list, alias="frontendComponents")
    key_interactions: list[str] = Field(default_factory=list, alias="keyInteractions")

    model_config = {"populate_by_name": True}


class ScopeBoundaries(BaseModel):
    included: list[str] = Field(default_factory=list)
    excluded: list[str] = Field(default_factory=list)


class ProjectSpec(BaseModel):
    """Structured specification inferred from the user's request."""

    project_meta: ProjectMeta = Field(default_factory=ProjectMeta, alias="projectMeta")
    core_requirements: CoreRequirements = Field(default_factory=CoreRequirements, alias="coreRequirements")
    minimal_architecture: MinimalArchitecture = Field(default_factory=MinimalArchitecture, alias="minimalArchitecture")
    scope_boundaries: ScopeBoundaries = Field(default_factory=ScopeBoundaries, alias="scopeBoundaries")
    visual_design: dict[str, Any] | None = Field(default=None, alias="visualDesign")

    model_config = {"populate_by_name": True}

    @property
    def name(self) -> str:
        return self.project_meta.name

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2, exclude_none=True)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class TemplateDescriptor(BaseModel):
    name: str
    description: str = ""
    complexity: str = "medium"
    requires_auth: bool = False


class RouteResult(BaseModel):
    """Outcome of template selection. Non-empty clarification questions mean "ambiguous"."""

    template_name: str
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    reasoning: str = ""
    descriptor: TemplateDescriptor | None = None
    clarification_questions: list[str] = Field(default_factory=list)

    @property
    def is_ambiguous(self) -> bool:
        return bool(self.clarification_questions)


class TemplateContent(BaseModel):
    """Template bundle. Any missing field degrades to an empty string."""

    name: str
    backend_template: str = ""
    frontend_template: str = ""
    backend_instructions: str = ""
    frontend_instructions: str = ""
    backend_rules: str = ""
    frontend_rules: str = ""
    fetched_at: float = Field(default_factory=time.time)

    @field_validator(
        "backend_template",
        "frontend_template",
        "backend_instructions",
        "frontend_instructions",
        "backend_rules",
        "frontend_rules",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, v: Any) -> str:
        return "" if v is None else str(v)


class FallbackInfo(BaseModel):
    original_template: str
    reason: str
    fallback_type: str = "generic_prompts"


# ---------------------------------------------------------------------------
# Backend interface
# ---------------------------------------------------------------------------


class MethodParameter(BaseModel):
    name: str
    type: str
    required: bool = True


class MethodSignature(BaseModel):
    """One callable backend method in the normalized interface vocabulary."""

    name: str
    signature: str
    parameters: list[MethodParameter] = Field(default_factory=list)
    parameter_types: list[str] = Field(default_factory=list)
    return_type: str = "()"
    kind: Literal["query", "update"] = "update"


class DataModelField(BaseModel):
    name: str
    type: str
    optional: bool = False


class DataModel(BaseModel):
    name: str
    definition: str = ""
    fields: list[DataModelField] = Field(default_factory=list)


class ApiEndpoint(BaseModel):
    name: str
    full_signature: str = ""


class BackendContext(BaseModel):
    """Interface of the generated backend, consumed by the frontend prompt."""

    source_files: list[str] = Field(default_factory=list)
    interface_description: str = ""
    method_signatures: list[MethodSignature] = Field(default_factory=list)
    data_models: list[DataModel] = Field(default_factory=list)
    api_endpoints: list[ApiEndpoint] = Field(default_factory=list)
    verified: bool = False
    template_name: str | None = None
    routing_confidence: float | None = None


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class StreamEvent(BaseModel):
    """One event of a streaming channel."""

    type: Literal["connected", "content_delta", "complete", "error"]
    content: str = ""
    message: str | None = None


class PromptSpec(BaseModel):
    """Everything a streaming channel needs to open one generation request."""

    phase: Phase
    endpoint: Literal["spec", "backend", "frontend"]
    system_prompt: str
    user_prompt: str

    @property
    def size(self) -> int:
        return len(self.system_prompt) + len(self.user_prompt)


class ProgressEvent(BaseModel):
    """Best-effort progress notification. Exactly one `terminal` event is emitted per run."""

    type: Literal["phase_transition", "content_delta", "file_detected", "terminal"]
    phase: Phase
    message: str | None = None
    payload: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


class ErrorInfo(BaseModel):
    phase: Phase
    error_type: str
    message: str


class PhaseTiming(BaseModel):
    start: float
    end: float | None = None

    @property
    def duration(self) -> float | None:
        return None if self.end is None else self.end - self.start


class TemplateUsage(BaseModel):
    name: str
    confidence: float
    routing_time: float = 0.0
    fetching_time: float = 0.0
    was_user_selected: bool = False
    fallback_used: bool = False


class GenerationDiagnostics(BaseModel):
    fallback_used: bool = False
    fallback: FallbackInfo | None = None
    route_confidence: float | None = None
    clarification_questions: list[str] = Field(default_factory=list)
    recoverable_errors: list[ErrorInfo] = Field(default_factory=list)
    rejected_overwrites: list[str] = Field(default_factory=list)
    backend_entry_point_found: bool | None = None
    interface_verified: bool | None = None
    backend_grace_recheck_used: bool = False
    project_renamed_to: str | None = None
    timings: dict[str, PhaseTiming] = Field(default_factory=dict)


class GenerationResult(BaseModel):
    """Discriminated outcome of a run: `success` with files, or failure with partial files."""

    success: bool
    run_id: str
    files: dict[str, str] = Field(default_factory=dict)
    backend_files: dict[str, str] = Field(default_factory=dict)
    frontend_files: dict[str, str] = Field(default_factory=dict)
    spec: ProjectSpec | None = None
    template_used: TemplateUsage | None = None
    final_content: str = ""
    error: ErrorInfo | None = None
    diagnostics: GenerationDiagnostics = Field(default_factory=GenerationDiagnostics)

"""Core custom exceptions for the application."""


class PipelineError(Exception):
    """Base exception for pipeline-related errors."""


class ConfigurationError(PipelineError):
    """Exception for configuration-related errors (e.g., missing prompt templates, invalid settings)."""


class GenerationError(PipelineError):
    """A failure attributed to one phase of a generation run.

    Attributes:
        phase: Value of the phase the error originated in.
        fatal: Whether the run must stop. Recoverable errors are recorded in the
            run diagnostics and the run continues.
    """

    phase: str = "unknown"
    fatal: bool = True

    def __init__(self, message: str, phase: str | None = None):
        super().__init__(message)
        if phase is not None:
            self.phase = phase


class SpecificationError(GenerationError):
    """The request could not be turned into a project specification."""

    phase = "spec"


class RoutingError(GenerationError):
    """No template could be selected for the request."""

    phase = "routing"

    def __init__(self, message: str, clarification_questions: list[str] | None = None):
        super().__init__(message)
        self.clarification_questions = clarification_questions or []


class FetchingError(GenerationError):
    """Template content could not be loaded, not even the generic fallback."""

    phase = "fetching"


class BackendGenerationError(GenerationError):
    phase = "backend_gen"


class BackendAnalysisError(GenerationError):
    phase = "backend_analysis"
    fatal = False


class FrontendGenerationError(GenerationError):
    phase = "frontend_gen"


class PostProcessingError(GenerationError):
    phase = "configuring"
    fatal = False

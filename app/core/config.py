"""Application configuration settings.

This module defines the application-wide settings using Pydantic's BaseSettings.
It allows for loading configurations from environment variables and .env files,
providing type validation and default values.
"""

from pydantic import Field
from pydantic import field_validator
from pydantic_settings import BaseSettings

# Default list of CORS allowed origins
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://localhost:8000",
    "https://localhost:3000",
    "https://localhost:8000",
    "http://0.0.0.0:8000",
]


class Settings(BaseSettings):
    """Manages application settings, loading them from environment variables or an .env file.

    Attributes:
        openrouter_api_key: API key for the OpenAI-compatible LLM gateway.
        llm_base_url: Base URL of the OpenAI-compatible LLM gateway.
        model_id: Default model used when no phase-specific model is configured.
        spec_model_id: Model for specification inference (falls back to model_id).
        backend_model_id: Model for backend generation (falls back to model_id).
        frontend_model_id: Model for frontend generation (falls back to model_id).
        llm_max_tokens: Completion token limit for streamed generations.
        llm_temperature: Sampling temperature for streamed generations.
        template_base_url: Base URL hosting templates, instructions and rules.
        default_template: Template used by the deterministic selector.
        template_cache_ttl: Seconds a fetched template stays in the shared cache.
        template_fetch_timeout: HTTP timeout in seconds for template downloads.
        backend_grace_period: Seconds to wait before re-checking an empty backend phase.
        callback_drain_delay: Seconds between the terminal event and the drained state.
        phase_transition_delay: Pause after preparation transitions so UIs can render them.
        max_prompt_chars: Maximum characters allowed for an assembled phase prompt.
        backend_entry_points: File names recognised as the backend entry point.
        default_project_name: Placeholder name that triggers the automatic rename.
        telemetry_enabled: Log a run snapshot once the callbacks are drained.
        api_key: General API key for securing internal API endpoints.
        cors_allowed_origins: List of allowed origins for CORS.
        LLM_CONNECT_TIMEOUT: LLM client connect timeout in seconds.
        LLM_READ_TIMEOUT: LLM client read timeout in seconds.
    """

    openrouter_api_key: str | None = Field(default=None)
    llm_base_url: str = Field(default="https://openrouter.ai/api/v1")
    model_id: str = Field(default="anthropic/claude-sonnet-4")
    spec_model_id: str | None = Field(default=None)
    backend_model_id: str | None = Field(default=None)
    frontend_model_id: str | None = Field(default=None)
    llm_max_tokens: int = Field(default=32_000)
    llm_temperature: float = Field(default=0.2)

    template_base_url: str = Field(default="https://templates.example.invalid/projects/default")
    default_template: str = Field(default="MotokoReactBible")
    template_cache_ttl: float = Field(default=30 * 60)
    template_fetch_timeout: float = Field(default=20.0)

    backend_grace_period: float = Field(default=2.0)
    callback_drain_delay: float = Field(default=0.2)
    phase_transition_delay: float = Field(default=0.0)
    max_prompt_chars: int = Field(default=400_000)
    backend_entry_points: list[str] = Field(default_factory=lambda: ["main.mo"])
    default_project_name: str = Field(default="New Project")
    telemetry_enabled: bool = Field(default=False)

    api_key: str | None = Field(default=None)

    cors_allowed_origins: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CORS_ORIGINS),
    )

    LLM_CONNECT_TIMEOUT: float = Field(default=10.0, description="LLM client connect timeout in seconds.")
    LLM_READ_TIMEOUT: float = Field(default=300.0, description="LLM client read timeout in seconds.")

    model_config = {
        "env_file": ".env",
        "protected_namespaces": ("settings_",),
        "env_prefix": "",  # No prefix for environment variables
        "extra": "ignore",  # Ignore extra fields
    }

    @field_validator("cors_allowed_origins", mode="before")  # type: ignore
    @classmethod
    def assemble_cors_origins(cls, v: str | list[str] | None) -> list[str]:
        """Assembles the list of CORS allowed origins.

        If 'v' is a string, it splits it by commas. If 'v' is already a list,
        it's used directly. Otherwise, returns the default list of origins.
        """
        if isinstance(v, str) and v:
            return [origin.strip() for origin in v.split(",")]
        elif isinstance(v, list):
            return v
        return list(DEFAULT_CORS_ORIGINS)

    def model_for(self, endpoint: str) -> str:
        """Resolve the model id for a streaming endpoint ("spec", "backend", "frontend")."""
        override = {
            "spec": self.spec_model_id,
            "backend": self.backend_model_id,
            "frontend": self.frontend_model_id,
        }.get(endpoint)
        return override or self.model_id


settings = Settings()

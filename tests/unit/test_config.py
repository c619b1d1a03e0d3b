from app.core.config import DEFAULT_CORS_ORIGINS
from app.core.config import Settings
from app.core.config import settings


def test_config_defaults():
    # Ensure default settings have expected types and default values
    assert isinstance(settings.max_prompt_chars, int)
    assert settings.max_prompt_chars == 400_000
    assert settings.default_project_name == "New Project"
    assert settings.backend_entry_points == ["main.mo"]
    assert settings.template_cache_ttl == 30 * 60
    assert settings.callback_drain_delay == 0.2
    assert isinstance(settings.telemetry_enabled, bool)


def test_model_for_falls_back_to_default_model():
    cfg = Settings(model_id="base-model", backend_model_id="backend-model")
    assert cfg.model_for("backend") == "backend-model"
    assert cfg.model_for("frontend") == "base-model"
    assert cfg.model_for("spec") == "base-model"


def test_cors_origins_from_comma_separated_string():
    cfg = Settings(cors_allowed_origins="https://a.example, https://b.example")
    assert cfg.cors_allowed_origins == ["https://a.example", "https://b.example"]


def test_cors_origins_default_when_empty():
    cfg = Settings(cors_allowed_origins="")
    assert cfg.cors_allowed_origins == DEFAULT_CORS_ORIGINS

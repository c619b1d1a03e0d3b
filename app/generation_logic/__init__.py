"""Generation logic package.

This package groups the pieces that drive a project generation run (state,
completion guard, phase runner, orchestrator and the NDJSON stream adapter).
Keeping them here allows `app/api/routes.py` to stay minimal and focused on
HTTP routing while core business logic lives in composable modules.
"""

# Re-export most commonly-used helpers for convenience
from .callbacks import GenerationCallbacks  # noqa: F401
from .completion_guard import CompletionGuard  # noqa: F401
from .orchestrator import GenerationOrchestrator  # noqa: F401
from .phase_runner import PhaseOutput  # noqa: F401
from .phase_runner import PhaseRunner  # noqa: F401
from .state import GenerationState  # noqa: F401
from .stream_orchestrator import _stream_generation_logic  # noqa: F401

"""Post-run telemetry snapshot, logged once a run's callbacks are drained."""

import json
import logging

logger = logging.getLogger(__name__)


def build_snapshot(state, result) -> dict:
    return {
        "run_id": state.run_id,
        "success": result.success,
        "phase": state.phase.value,
        "template": result.template_used.name if result.template_used else None,
        "fallback_used": result.diagnostics.fallback_used,
        "file_count": len(result.files),
        "backend_files": len(result.backend_files),
        "frontend_files": len(result.frontend_files),
        "stream_events": state.stream_event_count,
        "recoverable_errors": [e.error_type for e in state.recoverable_errors],
        "error": result.error.model_dump(mode="json") if result.error else None,
        "timings": {
            phase: round(timing.duration, 3) for phase, timing in result.diagnostics.timings.items() if timing.duration is not None
        },
    }


def log_snapshot(state, result) -> None:
    """Log one structured record; failures here never reach the run."""
    try:
        snapshot = build_snapshot(state, result)
    except Exception:
        logger.warning("[%s] Could not build telemetry snapshot", state.run_id, exc_info=True)
        return
    logger.info("[%s] Run snapshot: %s", state.run_id, json.dumps(snapshot, sort_keys=True))

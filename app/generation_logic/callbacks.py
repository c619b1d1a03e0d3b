"""Optional host hooks of a generation run.

Every hook may be a plain function or a coroutine function. Notification
hooks are best effort: their exceptions are logged and never reach the run.
"""

import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

__all__ = ["GenerationCallbacks", "call_hook", "notify"]


@dataclass
class GenerationCallbacks:
    on_progress: Callable[..., Any] | None = None
    on_file_update: Callable[..., Any] | None = None
    on_streaming_update: Callable[..., Any] | None = None
    on_spec_progress: Callable[..., Any] | None = None
    on_template_selected: Callable[..., Any] | None = None
    on_template_fallback: Callable[..., Any] | None = None
    verify_backend_interface: Callable[..., Any] | None = None
    on_platform_files_integration: Callable[..., Any] | None = None
    get_project_name: Callable[..., Any] | None = None
    rename_project: Callable[..., Any] | None = None


async def call_hook(hook: Callable[..., Any] | None, *args: Any) -> Any:
    """Invoke ``hook`` and await its result when needed. Exceptions propagate."""
    if hook is None:
        return None
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def notify(hook: Callable[..., Any] | None, *args: Any, run_id: str = "", name: str = "callback") -> Any:
    """Invoke a notification hook, logging instead of raising on failure."""
    try:
        return await call_hook(hook, *args)
    except Exception:
        logger.warning("[%s] %s raised; continuing", run_id, name, exc_info=True)
        return None

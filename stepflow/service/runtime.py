from __future__ import annotations

import threading

from stepflow.config import Settings, get_settings, reset_settings_cache
from stepflow.logging import get_logger
from stepflow.service.executor import ToolExecutor
from stepflow.service.tools import ToolRegistry
from stepflow.service.workflow import ExecutionEngine

logger = get_logger(__name__)


class Runtime:
    """Process-wide collaborators: one registry, one executor, one engine.

    Runs created by the engine share only these and the graphs they are given.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.registry = ToolRegistry()
        self.executor = ToolExecutor(self.registry, settings=self.settings)
        self.engine = ExecutionEngine(executor=self.executor, settings=self.settings)
        logger.info(
            "runtime_initialized",
            tool_workers=self.settings.tool_workers,
            run_timeout_seconds=self.settings.run_timeout_seconds,
        )

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked: the unlocked read is the fast path once the runtime
    exists; creation happens under the lock.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Shut down the current runtime and build a fresh one from the environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.shutdown(wait=False)
        reset_settings_cache()
        runtime = Runtime(get_settings())
        return runtime

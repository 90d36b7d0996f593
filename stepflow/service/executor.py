from __future__ import annotations

import asyncio
import concurrent.futures
import contextvars
import functools
import inspect
import time
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator

from stepflow.config import Settings, get_settings
from stepflow.graph.models import NodeLocation
from stepflow.logging import get_logger
from stepflow.service.context import ExecutionContext, HistoryEntry
from stepflow.service.errors import (
    RunCancelledError,
    ToolArgumentsError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolOutputError,
)
from stepflow.service.tools import RegisteredTool, ToolRegistry


def _validation_errors(payload: Any, schema: Optional[dict]) -> Optional[List[str]]:
    if not schema:
        return None
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.path))
    if errors:
        return [e.message for e in errors]
    return None


def _consume_outcome(task: "asyncio.Future[Any]") -> None:
    # Retrieve the outcome of an abandoned call so it is not reported as lost
    if not task.cancelled():
        task.exception()


class ToolExecutor:
    """Dispatches tool calls for the engine.

    Coroutine handlers are awaited on the running loop; plain functions run
    in a bounded thread pool. Every call races its timeout and the run's
    cancellation token. Nothing is retried.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or get_settings()
        self.logger = get_logger(__name__)
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.settings.tool_workers, thread_name_prefix="stepflow-tool"
        )
        self._executor_shutdown = False

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool. Pending calls are cancelled unless ``wait``."""
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        self._pool.shutdown(wait=wait, cancel_futures=not wait)
        self.logger.info("tool_executor_shutdown", wait=wait)

    async def execute(
        self,
        ctx: ExecutionContext,
        tool_name: str,
        args: Dict[str, Any],
        *,
        location: Optional[NodeLocation] = None,
    ) -> Any:
        ctx.check_active()
        entry = self.registry.get(tool_name)
        if entry is None:
            raise ToolNotFoundError(tool_name)

        if self.settings.validate_tool_arguments:
            errors = _validation_errors(args, entry.input_schema)
            if errors:
                cause = ToolArgumentsError(errors)
                self.logger.warning("tool_arguments_invalid", tool=tool_name, errors=errors)
                raise ToolExecutionError(tool_name, cause) from cause

        timeout = self.settings.tool_timeout(entry.timeout_seconds)
        remaining = ctx.remaining_seconds()
        limited_by_run = remaining is not None and remaining < timeout
        if limited_by_run:
            timeout = remaining

        started = time.perf_counter()
        call = asyncio.ensure_future(self._invoke(entry, args, ctx, location))
        cancel_wait = asyncio.ensure_future(ctx.cancellation.wait())
        try:
            done, _ = await asyncio.wait(
                {call, cancel_wait},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            cancel_wait.cancel()

        if call not in done:
            call.cancel()
            call.add_done_callback(_consume_outcome)
            if not entry.is_async:
                self.logger.warning("tool_thread_abandoned", tool=tool_name)
            if ctx.cancellation.cancelled:
                raise RunCancelledError(ctx.cancellation.reason or "cancelled")
            if limited_by_run:
                raise RunCancelledError("run timeout exceeded")
            self.logger.warning("tool_timeout", tool=tool_name, timeout=timeout)
            cause = TimeoutError(f"tool {tool_name!r} timed out after {timeout:g}s")
            raise ToolExecutionError(tool_name, cause) from cause

        try:
            result = call.result()
        except (Exception, asyncio.CancelledError) as exc:
            self.logger.warning(
                "tool_failed", tool=tool_name, error_type=type(exc).__name__, error=str(exc)
            )
            raise ToolExecutionError(tool_name, exc) from exc

        output_errors = _validation_errors(result, entry.output_schema)
        if output_errors:
            cause = ToolOutputError(output_errors)
            self.logger.warning("tool_output_invalid", tool=tool_name, errors=output_errors)
            raise ToolExecutionError(tool_name, cause) from cause

        duration_ms = (time.perf_counter() - started) * 1000
        ctx.history.record(
            HistoryEntry(
                tool=tool_name,
                args=args,
                result=result,
                location=location,
                duration_ms=duration_ms,
            )
        )
        self.logger.debug("tool_completed", tool=tool_name, duration_ms=round(duration_ms, 2))
        return result

    async def _invoke(
        self,
        entry: RegisteredTool,
        args: Dict[str, Any],
        ctx: ExecutionContext,
        location: Optional[NodeLocation],
    ) -> Any:
        tool_ctx = ctx.tool_context(location)
        if entry.is_async:
            result = await entry.handler(args, tool_ctx)
        else:
            loop = asyncio.get_running_loop()
            # carry the run id and other context variables into the worker thread
            call_context = contextvars.copy_context()
            result = await loop.run_in_executor(
                self._pool,
                functools.partial(call_context.run, entry.handler, args, tool_ctx),
            )
        if inspect.isawaitable(result):
            result = await result
        return result

"""Tests for tool dispatch: timeouts, cancellation, validation and history."""

from __future__ import annotations

import asyncio
import threading
import time

import pytest

from stepflow.config import Settings
from stepflow.graph.models import NodeLocation
from stepflow.logging import get_run_id, run_id_var
from stepflow.service.context import ExecutionContext
from stepflow.service.errors import (
    RunCancelledError,
    ToolArgumentsError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolOutputError,
)
from stepflow.service.executor import ToolExecutor
from stepflow.service.tools import ToolRegistry


@pytest.fixture
def tools():
    return ToolRegistry()


@pytest.fixture
def executor(tools):
    settings = Settings(default_tool_timeout_seconds=1.0, max_tool_timeout_seconds=2.0, tool_workers=2)
    executor = ToolExecutor(tools, settings=settings)
    yield executor
    executor.shutdown(wait=False)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_sync_handler_runs_in_thread(self, tools, executor):
        main_thread = threading.get_ident()
        seen = {}

        def handler(args, ctx):
            seen["thread"] = threading.get_ident()
            return {"echo": args["x"]}

        tools.register("echo", handler)
        ctx = ExecutionContext()
        result = await executor.execute(ctx, "echo", {"x": 1})

        assert result == {"echo": 1}
        assert seen["thread"] != main_thread

    @pytest.mark.asyncio
    async def test_async_handler_awaited(self, tools, executor):
        async def handler(args, ctx):
            await asyncio.sleep(0)
            return args["x"] * 2

        tools.register("double", handler)
        assert await executor.execute(ExecutionContext(), "double", {"x": 4}) == 8

    @pytest.mark.asyncio
    async def test_unknown_tool(self, executor):
        with pytest.raises(ToolNotFoundError) as excinfo:
            await executor.execute(ExecutionContext(), "ghost", {})
        assert excinfo.value.tool == "ghost"

    @pytest.mark.asyncio
    async def test_success_appends_history(self, tools, executor):
        tools.register("echo", lambda args, ctx: "ok")
        ctx = ExecutionContext()
        location = NodeLocation(0, 1)
        await executor.execute(ctx, "echo", {"a": 1}, location=location)

        (entry,) = ctx.history.snapshot()
        assert entry.tool == "echo"
        assert entry.args == {"a": 1}
        assert entry.result == "ok"
        assert entry.location == location
        assert entry.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_handler_error_wrapped(self, tools, executor):
        def boom(args, ctx):
            raise KeyError("missing")

        tools.register("boom", boom)
        ctx = ExecutionContext()
        with pytest.raises(ToolExecutionError) as excinfo:
            await executor.execute(ctx, "boom", {})
        assert isinstance(excinfo.value.cause, KeyError)
        assert excinfo.value.__cause__ is excinfo.value.cause
        assert len(ctx.history) == 0

    @pytest.mark.asyncio
    async def test_handler_cancelled_error_wrapped(self, tools, executor):
        async def gives_up(args, ctx):
            await asyncio.sleep(0)
            raise asyncio.CancelledError()

        tools.register("gives_up", gives_up)
        ctx = ExecutionContext()
        with pytest.raises(ToolExecutionError) as excinfo:
            await executor.execute(ctx, "gives_up", {})
        assert isinstance(excinfo.value.cause, asyncio.CancelledError)
        assert not ctx.cancellation.cancelled

    @pytest.mark.asyncio
    async def test_handler_sees_context(self, tools, executor):
        captured = {}

        def handler(args, ctx):
            captured.update(
                run_id=ctx.run_id,
                session_id=ctx.session_id,
                location=ctx.location,
                log_run_id=get_run_id(),
            )
            ctx.append_output("token", "abc")
            return None

        tools.register("peek", handler)
        ctx = ExecutionContext(session_id="s1", user_id="u1")
        token = run_id_var.set(ctx.run_id)
        try:
            await executor.execute(ctx, "peek", {}, location=NodeLocation(0, 0))
        finally:
            run_id_var.reset(token)

        assert captured["run_id"] == ctx.run_id
        assert captured["session_id"] == "s1"
        assert captured["location"] == NodeLocation(0, 0)
        assert captured["log_run_id"] == ctx.run_id
        assert ctx.variables["vars.token"] == "abc"


class TestValidation:
    SCHEMA = {
        "type": "object",
        "properties": {"url": {"type": "string"}},
        "required": ["url"],
    }

    @pytest.mark.asyncio
    async def test_invalid_arguments_block_dispatch(self, tools, executor):
        calls = []
        tools.register("http", lambda args, ctx: calls.append(args), input_schema=self.SCHEMA)

        with pytest.raises(ToolExecutionError) as excinfo:
            await executor.execute(ExecutionContext(), "http", {"url": 5})
        assert isinstance(excinfo.value.cause, ToolArgumentsError)
        assert calls == []

    @pytest.mark.asyncio
    async def test_validation_can_be_disabled(self, tools):
        settings = Settings(validate_tool_arguments=False)
        executor = ToolExecutor(tools, settings=settings)
        try:
            tools.register("http", lambda args, ctx: "sent", input_schema=self.SCHEMA)
            assert await executor.execute(ExecutionContext(), "http", {}) == "sent"
        finally:
            executor.shutdown()

    @pytest.mark.asyncio
    async def test_output_schema_checked(self, tools, executor):
        tools.register(
            "count",
            lambda args, ctx: "many",
            output_schema={"type": "integer"},
        )
        with pytest.raises(ToolExecutionError) as excinfo:
            await executor.execute(ExecutionContext(), "count", {})
        assert isinstance(excinfo.value.cause, ToolOutputError)


class TestTimeoutsAndCancellation:
    @pytest.mark.asyncio
    async def test_tool_timeout(self, tools, executor):
        async def slow(args, ctx):
            await asyncio.sleep(5)

        tools.register("slow", slow, timeout_seconds=0.05)
        with pytest.raises(ToolExecutionError) as excinfo:
            await executor.execute(ExecutionContext(), "slow", {})
        assert isinstance(excinfo.value.cause, TimeoutError)

    @pytest.mark.asyncio
    async def test_sync_tool_timeout(self, tools, executor):
        tools.register("sleepy", lambda args, ctx: time.sleep(0.3), timeout_seconds=0.05)
        with pytest.raises(ToolExecutionError) as excinfo:
            await executor.execute(ExecutionContext(), "sleepy", {})
        assert isinstance(excinfo.value.cause, TimeoutError)

    @pytest.mark.asyncio
    async def test_run_budget_exhausted_is_cancellation(self, tools, executor):
        async def slow(args, ctx):
            await asyncio.sleep(5)

        tools.register("slow", slow)
        ctx = ExecutionContext(deadline=time.monotonic() + 0.05)
        with pytest.raises(RunCancelledError) as excinfo:
            await executor.execute(ctx, "slow", {})
        assert "timeout" in excinfo.value.reason

    @pytest.mark.asyncio
    async def test_expired_deadline_refuses_dispatch(self, tools, executor):
        calls = []
        tools.register("noop", lambda args, ctx: calls.append(1))
        ctx = ExecutionContext(deadline=time.monotonic() - 1)
        with pytest.raises(RunCancelledError):
            await executor.execute(ctx, "noop", {})
        assert calls == []

    @pytest.mark.asyncio
    async def test_cancellation_interrupts_call(self, tools, executor):
        started = asyncio.Event()

        async def wait_forever(args, ctx):
            started.set()
            await asyncio.sleep(5)

        tools.register("wait", wait_forever)
        ctx = ExecutionContext()

        async def cancel_soon():
            await started.wait()
            ctx.cancellation.cancel("user requested")

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(RunCancelledError) as excinfo:
            await executor.execute(ctx, "wait", {})
        await canceller
        assert excinfo.value.reason == "user requested"

    @pytest.mark.asyncio
    async def test_cancel_from_another_thread(self, tools, executor):
        async def slow(args, ctx):
            await asyncio.sleep(5)

        tools.register("slow", slow)
        ctx = ExecutionContext()
        timer = threading.Timer(0.05, ctx.cancellation.cancel, args=("shutdown",))
        timer.start()
        try:
            with pytest.raises(RunCancelledError):
                await executor.execute(ctx, "slow", {})
        finally:
            timer.cancel()

    def test_shutdown_is_idempotent(self, tools):
        executor = ToolExecutor(tools, settings=Settings())
        executor.shutdown()
        executor.shutdown()

from __future__ import annotations

import pytest

from conftest import build_graph
from stepflow.service.runtime import get_runtime, reset_runtime_for_tests
from stepflow.service.workflow import RunStatus


def test_runtime_is_a_singleton():
    assert get_runtime() is get_runtime()


def test_reset_builds_fresh_collaborators():
    before = get_runtime()
    before.registry.register("x", lambda args, ctx: None)
    after = reset_runtime_for_tests()
    assert after is not before
    assert "x" not in after.registry
    assert after.engine.executor is after.executor


@pytest.mark.asyncio
async def test_engine_uses_runtime_registry():
    runtime = get_runtime()
    runtime.registry.register("ping", lambda args, ctx: "pong")
    result = await runtime.engine.run(build_graph([[{"type": "ping"}]]), "t1")
    assert result.status is RunStatus.SUCCEEDED
    assert result.output("steps[0].nodes[0].output") == "pong"

import asyncio
import inspect
import os
import sys
from pathlib import Path

# Settings are read from the environment; pin them before any stepflow import
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("TOOL_TIMEOUT_SECONDS", "5")
os.environ.setdefault("RUN_TIMEOUT_SECONDS", "30")
os.environ.setdefault("TOOL_WORKERS", "4")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from stepflow.graph.models import WorkflowGraph  # noqa: E402
from stepflow.graph.validation import load_workflow  # noqa: E402
from stepflow.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from stepflow.service.transforms import reset_transformations  # noqa: E402
from stepflow.service.workflow import ExecutionEngine  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    reset_transformations()
    yield
    reset_transformations()
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def registry(runtime):
    return runtime.registry


@pytest.fixture
def engine(runtime) -> ExecutionEngine:
    return runtime.engine


class SpyTools:
    """Registers recording handlers and remembers the order they ran in."""

    def __init__(self, registry):
        self.registry = registry
        self.calls = []

    def add(self, name, result=None):
        def handler(args, ctx):
            self.calls.append((name, dict(args)))
            if callable(result):
                return result(args, ctx)
            return result

        self.registry.register(name, handler)
        return handler

    @property
    def names(self):
        return [name for name, _ in self.calls]


@pytest.fixture
def spy(registry):
    return SpyTools(registry)


def build_graph(steps, triggers=None) -> WorkflowGraph:
    """Small helper so tests can describe graphs as plain dicts."""
    return load_workflow(
        {
            "id": "wf-test",
            "name": "test",
            "triggers": triggers or [{"id": "t1", "type": "manual"}],
            "steps": [
                step if isinstance(step, dict) and "nodes" in step else {"nodes": step}
                for step in steps
            ],
        }
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")

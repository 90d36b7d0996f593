from __future__ import annotations

import asyncio
import threading
import time
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from stepflow.graph.models import NodeLocation
from stepflow.service.errors import RunCancelledError
from stepflow.service.variables import canonical_path


class CancellationToken:
    """Cooperative cancellation shared by a run and the code driving it.

    ``cancel`` may be called from any thread; waiters on the run's event loop
    are woken through ``call_soon_threadsafe``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._reason: Optional[str] = None
        self._waiters: List[Tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._reason = reason
            waiters, self._waiters = self._waiters, []
        for loop, event in waiters:
            if loop.is_closed():
                continue
            try:
                loop.call_soon_threadsafe(event.set)
            except RuntimeError:
                # loop stopped between the check and the call
                continue

    async def wait(self) -> str:
        """Block until cancelled; returns the reason."""
        loop = asyncio.get_running_loop()
        event = asyncio.Event()
        with self._lock:
            if self._cancelled:
                return self._reason or "cancelled"
            self._waiters.append((loop, event))
        try:
            await event.wait()
        finally:
            with self._lock:
                if (loop, event) in self._waiters:
                    self._waiters.remove((loop, event))
        return self._reason or "cancelled"

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RunCancelledError(self._reason or "cancelled")


@dataclass(frozen=True)
class HistoryEntry:
    tool: str
    args: Dict[str, Any]
    result: Any
    location: Optional[NodeLocation] = None
    duration_ms: float = 0.0

    def summary(self) -> Dict[str, Any]:
        return {
            "tool": self.tool,
            "location": self.location.path if self.location else None,
            "duration_ms": round(self.duration_ms, 2),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool": self.tool,
            "args": self.args,
            "result": self.result,
            "location": self.location.to_dict() if self.location else None,
            "duration_ms": self.duration_ms,
        }


class ExecutionHistory:
    """Append-only record of successful tool calls for one run."""

    def __init__(self) -> None:
        self._entries: List[HistoryEntry] = []
        self._lock = threading.Lock()

    def record(self, entry: HistoryEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def snapshot(self) -> Tuple[HistoryEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    def tools(self) -> List[str]:
        return [entry.tool for entry in self.snapshot()]

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class ExecutionContext:
    """State owned by a single run; never shared between runs."""

    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    history: ExecutionHistory = field(default_factory=ExecutionHistory)
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    # time.monotonic() value after which the run is out of budget
    deadline: Optional[float] = None

    def set_variable(self, path: str, value: Any) -> None:
        self.variables[canonical_path(path)] = value

    def get_variable(self, path: str, default: Any = None) -> Any:
        return self.variables.get(canonical_path(path), default)

    def remaining_seconds(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check_active(self) -> None:
        """Raise ``RunCancelledError`` if cancelled or out of time."""
        self.cancellation.raise_if_cancelled()
        remaining = self.remaining_seconds()
        if remaining is not None and remaining <= 0:
            raise RunCancelledError("run timeout exceeded")

    def tool_context(self, location: Optional[NodeLocation] = None) -> "ToolContext":
        return ToolContext(self, location)


class ToolContext:
    """The view of a run that tool handlers receive."""

    def __init__(self, context: ExecutionContext, location: Optional[NodeLocation] = None) -> None:
        self._context = context
        self.location = location

    @property
    def run_id(self) -> str:
        return self._context.run_id

    @property
    def session_id(self) -> Optional[str]:
        return self._context.session_id

    @property
    def user_id(self) -> Optional[str]:
        return self._context.user_id

    @property
    def variables(self) -> Mapping[str, Any]:
        return MappingProxyType(self._context.variables)

    @property
    def history(self) -> Tuple[HistoryEntry, ...]:
        return self._context.history.snapshot()

    @property
    def cancellation(self) -> CancellationToken:
        return self._context.cancellation

    def remaining_seconds(self) -> Optional[float]:
        return self._context.remaining_seconds()

    def append_output(self, name: str, value: Any) -> str:
        """Publish ``value`` as ``vars.<name>`` for later nodes; returns the path."""
        path = canonical_path(f"vars.{name}")
        self._context.variables[path] = value
        return path

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

if TYPE_CHECKING:
    from stepflow.graph.models import NodeLocation


class WorkflowError(Exception):
    """Base class for errors raised while loading or running a workflow.

    Every error carries a stable ``error_code`` so callers persisting run
    records can group failures without parsing messages:
    - graph_integrity
    - redirect_cycle
    - tool_not_found
    - duplicate_tool
    - tool_execution
    - invalid_path
    - unresolved_variable
    - cancelled

    ``location`` is filled in by the engine with the node that was executing
    when the error surfaced.
    """

    error_code: str = "workflow_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        location: Optional["NodeLocation"] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.location = location

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.error_code,
            "message": self.message,
            "detail": self.detail,
            "location": self.location.to_dict() if self.location else None,
        }


class GraphIntegrityError(WorkflowError):
    """The graph is structurally invalid; raised before any node runs."""

    error_code = "graph_integrity"

    def __init__(self, issues: Sequence[str], *, message: Optional[str] = None) -> None:
        self.issues: List[str] = list(issues)
        summary = message or f"workflow graph has {len(self.issues)} integrity issue(s)"
        if self.issues:
            summary = f"{summary}: " + "; ".join(self.issues)
        super().__init__(summary, detail={"issues": self.issues})


class RedirectCycleError(WorkflowError):
    """A redirect sent execution back to a position already executed."""

    error_code = "redirect_cycle"

    def __init__(self, target: tuple[int, int], trail: Sequence[tuple[int, int]]) -> None:
        self.target = target
        self.trail = list(trail)
        rendered = " -> ".join(f"{s}-{n}" for s, n in [*self.trail, target])
        super().__init__(
            f"redirect cycle detected: {rendered}",
            detail={"target": list(target), "trail": [list(t) for t in self.trail]},
        )


class ToolNotFoundError(WorkflowError):
    """No handler is registered under the requested tool name."""

    error_code = "tool_not_found"

    def __init__(self, tool: str) -> None:
        self.tool = tool
        super().__init__(f"unknown tool {tool!r}", detail={"tool": tool})


class DuplicateToolError(WorkflowError):
    """A handler is already registered under this name."""

    error_code = "duplicate_tool"

    def __init__(self, tool: str) -> None:
        self.tool = tool
        super().__init__(
            f"tool {tool!r} is already registered; unregister it first",
            detail={"tool": tool},
        )


class ToolExecutionError(WorkflowError):
    """A tool handler raised, timed out, or rejected its arguments."""

    error_code = "tool_execution"

    def __init__(self, tool: str, cause: BaseException) -> None:
        self.tool = tool
        self.cause = cause
        super().__init__(
            f"tool {tool!r} failed: {type(cause).__name__}: {cause}",
            detail={"tool": tool, "cause": type(cause).__name__},
        )


class ToolArgumentsError(Exception):
    """Resolved node configuration does not match the tool's input schema."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("tool input validation failed: " + "; ".join(self.errors))


class ToolOutputError(Exception):
    """A handler returned a result that does not match the tool's output schema."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("tool output validation failed: " + "; ".join(self.errors))


class InvalidPathError(WorkflowError):
    """A variable path is malformed or addresses something that cannot exist."""

    error_code = "invalid_path"

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(
            f"invalid variable path {path!r}: {reason}",
            detail={"path": path, "reason": reason},
        )


class UnresolvedVariableError(WorkflowError):
    """A referenced value has not been produced yet in this run."""

    error_code = "unresolved_variable"

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"variable {path!r} is unresolved", detail={"path": path})


class RunCancelledError(WorkflowError):
    """The run was cancelled or exceeded its wall-clock budget."""

    error_code = "cancelled"

    def __init__(self, reason: str = "cancelled") -> None:
        self.reason = reason
        super().__init__(f"run cancelled: {reason}", detail={"reason": reason})


__all__ = [
    "WorkflowError",
    "GraphIntegrityError",
    "RedirectCycleError",
    "ToolNotFoundError",
    "DuplicateToolError",
    "ToolExecutionError",
    "ToolArgumentsError",
    "ToolOutputError",
    "InvalidPathError",
    "UnresolvedVariableError",
    "RunCancelledError",
]

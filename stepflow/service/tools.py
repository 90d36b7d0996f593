from __future__ import annotations

import inspect
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from jsonschema import Draft202012Validator

from stepflow.logging import get_logger
from stepflow.service.errors import DuplicateToolError

logger = get_logger(__name__)

ToolHandler = Callable[..., Any]


@dataclass(frozen=True)
class ToolDescriptor:
    """Public description of a registered tool, safe to hand to authoring UIs."""

    name: str
    description: str = ""
    input_schema: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass(frozen=True)
class RegisteredTool:
    name: str
    handler: ToolHandler
    description: str = ""
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None
    timeout_seconds: Optional[float] = None
    is_async: bool = field(default=False)

    @property
    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(self.name, self.description, self.input_schema)


class ToolRegistry:
    """Name to handler mapping shared by every run in the process.

    Writes take a lock and publish a fresh mapping; readers use whatever
    mapping is current and never block, so a registration racing a lookup
    yields either the old or the new handler, never a torn state.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tools: Mapping[str, RegisteredTool] = MappingProxyType({})

    def register(
        self,
        name: str,
        handler: ToolHandler,
        *,
        description: str = "",
        input_schema: Optional[Dict[str, Any]] = None,
        output_schema: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> RegisteredTool:
        if not isinstance(name, str) or not name.strip():
            raise ValueError("tool name must be a non-empty string")
        if not callable(handler):
            raise TypeError(f"handler for {name!r} is not callable")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        for schema in (input_schema, output_schema):
            if schema is not None:
                Draft202012Validator.check_schema(schema)

        entry = RegisteredTool(
            name=name,
            handler=handler,
            description=description or (inspect.getdoc(handler) or "").split("\n")[0],
            input_schema=input_schema,
            output_schema=output_schema,
            timeout_seconds=timeout_seconds,
            is_async=inspect.iscoroutinefunction(handler),
        )
        with self._lock:
            if name in self._tools:
                raise DuplicateToolError(name)
            updated = dict(self._tools)
            updated[name] = entry
            self._tools = MappingProxyType(updated)
        logger.info("tool_registered", tool=name, is_async=entry.is_async)
        return entry

    def unregister(self, name: str) -> bool:
        """Remove ``name``; returns False when it was not registered."""
        with self._lock:
            if name not in self._tools:
                return False
            updated = dict(self._tools)
            del updated[name]
            self._tools = MappingProxyType(updated)
        logger.info("tool_unregistered", tool=name)
        return True

    def tool(
        self,
        name: str,
        *,
        description: str = "",
        input_schema: Optional[Dict[str, Any]] = None,
        output_schema: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of ``register``; returns the handler unchanged."""

        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(
                name,
                handler,
                description=description,
                input_schema=input_schema,
                output_schema=output_schema,
                timeout_seconds=timeout_seconds,
            )
            return handler

        return decorator

    def get(self, name: str) -> Optional[RegisteredTool]:
        return self._tools.get(name)

    def list(self) -> List[ToolDescriptor]:
        return [entry.descriptor for _, entry in sorted(self._tools.items())]

    def names(self) -> List[str]:
        return sorted(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

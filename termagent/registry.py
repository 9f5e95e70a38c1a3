from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from .errors import UnknownToolError


logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], str]


class Closeable(Protocol):
    def close(self) -> None: ...


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    handler: ToolHandler
    description: str


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self._resources: list[Closeable] = []
        self._closed = False

    def register(self, name: str, handler: ToolHandler, description: str) -> None:
        clean = (name or "").strip()
        if not clean:
            raise ValueError("Tool name is empty")
        if clean in self._tools:
            logger.debug("Tool '%s' re-registered; last registration wins", clean)
        self._tools[clean] = ToolDescriptor(name=clean, handler=handler, description=description)

    def execute(self, name: str, params: dict[str, Any] | None = None) -> str:
        descriptor = self._tools.get((name or "").strip())
        if descriptor is None:
            raise UnknownToolError(name)
        result = descriptor.handler(dict(params or {}))
        return "" if result is None else str(result)

    def names(self) -> list[str]:
        return list(self._tools)

    def get_tool_list(self) -> str:
        return "\n".join(f"- {d.name}: {d.description}" for d in self._tools.values())

    def add_resource(self, resource: Closeable) -> None:
        self._resources.append(resource)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while self._resources:
            resource = self._resources.pop()
            try:
                resource.close()
            except Exception:
                logger.exception("Failed to close tool resource %r", resource)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __enter__(self) -> "ToolRegistry":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

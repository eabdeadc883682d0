from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from core.specs import ToolArgs

# (context, validated args) -> JSON-serialisable payload
ToolHandler = Callable[[Any, Any], Awaitable[Any]]


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    args_model: Type[ToolArgs]
    handler: ToolHandler
    # False for calls with side effects; those are never retried
    idempotent: bool = True

    def input_schema(self) -> Dict[str, Any]:
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        return schema

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema(),
        }


class ToolRegistry:
    """Name -> ToolDescriptor map, filled once at import time."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolDescriptor] = {}

    def register(
        self,
        name: str,
        description: str,
        args_model: Type[ToolArgs],
        idempotent: bool = True,
    ) -> Callable[[ToolHandler], ToolHandler]:
        def decorator(func: ToolHandler) -> ToolHandler:
            if name in self._tools:
                raise ValueError(f"tool {name} already registered")
            self._tools[name] = ToolDescriptor(
                name=name,
                description=description,
                args_model=args_model,
                handler=func,
                idempotent=idempotent,
            )
            return func

        return decorator

    def get(self, name: Any) -> Optional[ToolDescriptor]:
        # Names arrive straight off the wire and may not even be hashable
        if not isinstance(name, str):
            return None
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return self.get(name) is not None

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> List[str]:
        return list(self._tools)

    def descriptors(self) -> List[ToolDescriptor]:
        return list(self._tools.values())

    def list_schemas(self) -> List[Dict[str, Any]]:
        return [tool.to_dict() for tool in self._tools.values()]


@dataclass
class ToolContext:
    """What a handler may touch besides its arguments."""

    client: Any
    connection_id: Optional[str] = None
    probes: Optional[Any] = None  # HealthReporter, for the probe tools
    client_factory: Optional[Callable[[str, str], Any]] = None

    @property
    def actor(self) -> str:
        return self.connection_id or "mcp"

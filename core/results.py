"""Tagged result type returned by the dispatcher."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Union

from core.errors import ErrorKind, GatewayError


@dataclass(frozen=True)
class Success:
    data: Any

    @property
    def ok(self) -> bool:
        return True

    def to_envelope(self) -> Dict[str, Any]:
        return {"success": True, "data": self.data}


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return False

    @classmethod
    def from_error(cls, error: GatewayError) -> "Failure":
        return cls(kind=error.kind, message=error.message, details=dict(error.details))

    def to_envelope(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": {
                "kind": self.kind.value,
                "message": self.message,
                "details": self.details,
            },
        }


ToolResult = Union[Success, Failure]

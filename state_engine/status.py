"""Server status as a tagged value."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class StatusKind(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


@dataclass(frozen=True)
class ServerStatus:
    kind: StatusKind
    message: str | None = None

    @classmethod
    def stopped(cls) -> "ServerStatus":
        return cls(StatusKind.STOPPED)

    @classmethod
    def starting(cls) -> "ServerStatus":
        return cls(StatusKind.STARTING)

    @classmethod
    def running(cls) -> "ServerStatus":
        return cls(StatusKind.RUNNING)

    @classmethod
    def error(cls, message: str) -> "ServerStatus":
        return cls(StatusKind.ERROR, message)

    @property
    def label(self) -> str:
        if self.kind is StatusKind.ERROR:
            return f"error: {self.message}"
        return self.kind.value

    def to_dict(self) -> dict[str, str | None]:
        return {"kind": self.kind.value, "message": self.message}


__all__ = ["ServerStatus", "StatusKind"]

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from tracker_core.config import OperationTemplateConfig

if TYPE_CHECKING:
    from ops_tracker.log_buffer import LogBuffer


OPERATION_EVENT_PREFIX = "operation_"
CARD_LOG_TAIL = 10


def now_ms() -> int:
    return int(time.time() * 1000)


class OperationStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not OperationStatus.RUNNING


class LogLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    COMMAND = "command"

    @classmethod
    def coerce(cls, value: Any) -> "LogLevel":
        if isinstance(value, LogLevel):
            return value
        candidate = str(value or "").strip().lower()
        for level in cls:
            if level.value == candidate:
                return level
        return cls.INFO


class OperationKind(str, Enum):
    CREATE = "create"
    START = "start"
    STOP = "stop"
    REBUILD = "rebuild"


@dataclass(frozen=True)
class LogEntry:
    timestamp: int
    message: str
    level: LogLevel = LogLevel.INFO

    def to_payload(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "message": self.message, "level": self.level.value}


@dataclass(frozen=True)
class OperationTemplate:
    title: str
    description: str
    steps: tuple[str, ...]
    estimated_duration_ms: int


DEFAULT_OPERATION_TEMPLATES: dict[str, OperationTemplate] = {
    OperationKind.START.value: OperationTemplate(
        title="Starting Project",
        description="Initializing containers and services...",
        steps=("Pulling images", "Creating containers", "Starting services", "Health checks"),
        estimated_duration_ms=30_000,
    ),
    OperationKind.STOP.value: OperationTemplate(
        title="Stopping Project",
        description="Gracefully shutting down services...",
        steps=("Stopping containers", "Cleaning up resources"),
        estimated_duration_ms=15_000,
    ),
    OperationKind.REBUILD.value: OperationTemplate(
        title="Rebuilding Project",
        description="Rebuilding containers from scratch...",
        steps=(
            "Stopping containers",
            "Removing old containers",
            "Rebuilding images",
            "Starting new containers",
        ),
        estimated_duration_ms=120_000,
    ),
    OperationKind.CREATE.value: OperationTemplate(
        title="Creating Project",
        description="Setting up new project environment...",
        steps=(
            "Processing template",
            "Generating configuration",
            "Setting up Docker",
            "Installing dependencies",
            "Starting services",
        ),
        estimated_duration_ms=180_000,
    ),
}
FALLBACK_TEMPLATE_KIND = OperationKind.START.value


def resolve_templates(
    overrides: Mapping[str, OperationTemplateConfig] | None = None,
) -> dict[str, OperationTemplate]:
    """Merge configured template overrides onto the built-in kind templates.

    Kinds that only appear in ``overrides`` inherit missing fields from the
    fallback (``start``) template.
    """
    templates = dict(DEFAULT_OPERATION_TEMPLATES)
    for kind, override in (overrides or {}).items():
        base = templates.get(kind) or DEFAULT_OPERATION_TEMPLATES[FALLBACK_TEMPLATE_KIND]
        templates[kind] = OperationTemplate(
            title=base.title if override.title is None else override.title,
            description=base.description if override.description is None else override.description,
            steps=base.steps if override.steps is None else tuple(override.steps),
            estimated_duration_ms=(
                base.estimated_duration_ms
                if override.estimated_duration_ms is None
                else int(override.estimated_duration_ms)
            ),
        )
    return templates


def operation_id_for(kind: str, target_id: str, created_at_ms: int) -> str:
    return f"{kind}-{target_id}-{int(created_at_ms)}"


def backend_operation_id(kind: str, target_id: str) -> str:
    return f"{kind}-{target_id}"


def split_backend_operation_id(backend_id: Any) -> tuple[str, str] | None:
    # Kinds never contain "-", target ids may.
    candidate = str(backend_id or "").strip()
    kind, sep, target_id = candidate.partition("-")
    if not sep or not kind or not target_id:
        return None
    return kind, target_id


def format_duration(duration_ms: int) -> str:
    seconds = max(0, int(duration_ms)) // 1000
    if seconds < 60:
        return f"{seconds}s"
    minutes, remaining = divmod(seconds, 60)
    return f"{minutes}m {remaining}s"


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


@dataclass
class Operation:
    id: str
    kind: str
    target_id: str
    logs: "LogBuffer"
    target_name: str = ""
    title: str = ""
    description: str = ""
    steps: tuple[str, ...] = ()
    status: OperationStatus = OperationStatus.RUNNING
    current_step_index: int = 0
    progress: int = 0
    started_at: int = field(default_factory=now_ms)
    finished_at: int | None = None
    estimated_duration_ms: int | None = None

    @property
    def is_active(self) -> bool:
        return self.status is OperationStatus.RUNNING

    def set_step_index(self, value: Any) -> None:
        self.current_step_index = _clamp(_coerce_int(value, self.current_step_index), 0, len(self.steps))

    def set_progress(self, value: Any) -> None:
        self.progress = _clamp(_coerce_int(value, self.progress), 0, 100)

    def recompute_progress(self) -> None:
        if self.steps and self.status is OperationStatus.RUNNING:
            # Python rounds half to even; progress rounds half up.
            ratio = self.current_step_index / len(self.steps) * 100
            self.progress = _clamp(int(ratio + 0.5), 0, 100)

    def duration_ms(self, now: int | None = None) -> int:
        end = self.finished_at if self.finished_at is not None else (now_ms() if now is None else now)
        return max(0, end - self.started_at)

    def current_step_label(self) -> str:
        if not self.steps:
            return ""
        if self.status is OperationStatus.RUNNING and self.current_step_index < len(self.steps):
            return (
                f"Step {self.current_step_index + 1}/{len(self.steps)}: "
                f"{self.steps[self.current_step_index]}"
            )
        if self.status is OperationStatus.COMPLETED:
            return "All steps completed"
        return ""

    def to_payload(self, *, log_tail: int = CARD_LOG_TAIL) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "target_id": self.target_id,
            "target_name": self.target_name,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "steps": list(self.steps),
            "current_step_index": self.current_step_index,
            "current_step": self.current_step_label(),
            "progress": self.progress,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration": format_duration(self.duration_ms()),
            "estimated_duration_ms": self.estimated_duration_ms,
            "logs": [entry.to_payload() for entry in self.logs.snapshot(log_tail)],
            "log_count": len(self.logs),
        }


def _coerce_int(value: Any, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else fallback
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return fallback
        return int(parsed) if math.isfinite(parsed) else fallback
    return fallback

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterator, Mapping
from typing import Any

from ops_tracker.events import EventEmitter
from ops_tracker.log_buffer import DEFAULT_LOG_CAPACITY, LogBuffer
from ops_tracker.models import (
    DEFAULT_OPERATION_TEMPLATES,
    FALLBACK_TEMPLATE_KIND,
    LogLevel,
    Operation,
    OperationStatus,
    OperationTemplate,
    now_ms,
    operation_id_for,
    split_backend_operation_id,
)
from ops_tracker.scheduler import LoopScheduler, Scheduler, TimerHandle


LOGGER = logging.getLogger("ops_tracker.registry")

EVENT_OPERATION_PROGRESS = "operation_progress"
EVENT_OPERATION_LOG = "operation_log"
EVENT_OPERATION_STEP = "operation_step"
EVENT_OPERATION_COMPLETE = "operation_complete"

REGISTRY_EVENT_STARTED = "started"
REGISTRY_EVENT_UPDATED = "updated"
REGISTRY_EVENT_LOG = "log"
REGISTRY_EVENT_COMPLETED = "completed"
REGISTRY_EVENT_REMOVED = "removed"
REGISTRY_EVENT_TYPES = (
    REGISTRY_EVENT_STARTED,
    REGISTRY_EVENT_UPDATED,
    REGISTRY_EVENT_LOG,
    REGISTRY_EVENT_COMPLETED,
    REGISTRY_EVENT_REMOVED,
)

DEFAULT_SUCCESS_GRACE_MS = 3000
DEFAULT_FAILURE_GRACE_MS = 5000
DEFAULT_REFRESH_DELAY_MS = 1000

# Patch keys accepted by update(), including the camelCase wire spellings.
_PATCH_FIELD_ALIASES = {
    "title": "title",
    "description": "description",
    "target_name": "target_name",
    "targetName": "target_name",
    "projectName": "target_name",
    "current_step_index": "current_step_index",
    "currentStep": "current_step_index",
    "step": "current_step_index",
    "progress": "progress",
    "estimated_duration_ms": "estimated_duration_ms",
    "estimatedDuration": "estimated_duration_ms",
}


def _log_extra(operation: Operation | None, action: str, result: str, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "component": "registry",
        "operation": action,
        "operation_id": operation.id if operation is not None else "",
        "target_id": operation.target_id if operation is not None else "",
        "result": result,
    }
    payload.update(extra)
    return payload


class OperationRegistry:
    """Lifecycle and correlation authority for tracked operations.

    Operations are mutated only through this class. Once an operation reaches
    ``completed`` or ``failed`` it is frozen until it is removed, either by an
    explicit ``remove`` or by the grace timer scheduled in ``complete``.
    """

    def __init__(
        self,
        *,
        scheduler: Scheduler | None = None,
        templates: Mapping[str, OperationTemplate] | None = None,
        log_capacity: int = DEFAULT_LOG_CAPACITY,
        success_grace_ms: int = DEFAULT_SUCCESS_GRACE_MS,
        failure_grace_ms: int = DEFAULT_FAILURE_GRACE_MS,
        refresh_delay_ms: int = DEFAULT_REFRESH_DELAY_MS,
        refresh: Callable[[Operation], None] | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._scheduler = scheduler or LoopScheduler()
        self._templates = dict(templates or DEFAULT_OPERATION_TEMPLATES)
        self._log_capacity = int(log_capacity)
        self._success_grace_ms = int(success_grace_ms)
        self._failure_grace_ms = int(failure_grace_ms)
        self._refresh_delay_ms = int(refresh_delay_ms)
        self._refresh = refresh
        self._clock = clock
        self._operations: dict[str, Operation] = {}
        self._removal_timers: dict[str, TimerHandle] = {}
        self._refresh_timers: dict[str, TimerHandle] = {}
        self.events = EventEmitter(name="registry")

    def template_for(self, kind: str) -> OperationTemplate:
        return self._templates.get(kind) or self._templates.get(
            FALLBACK_TEMPLATE_KIND,
            DEFAULT_OPERATION_TEMPLATES[FALLBACK_TEMPLATE_KIND],
        )

    def _next_operation_id(self, kind: str, target_id: str) -> tuple[str, int]:
        created_at = int(self._clock())
        operation_id = operation_id_for(kind, target_id, created_at)
        while operation_id in self._operations:
            created_at += 1
            operation_id = operation_id_for(kind, target_id, created_at)
        return operation_id, created_at

    def start(
        self,
        kind: str,
        target_id: str,
        target_name: str = "",
        *,
        title: str | None = None,
        description: str | None = None,
        steps: list[str] | tuple[str, ...] | None = None,
        estimated_duration_ms: int | None = None,
    ) -> Operation:
        normalized_kind = str(kind or "").strip().lower()
        normalized_target = str(target_id or "").strip()
        if not normalized_kind or "-" in normalized_kind:
            raise ValueError(f"Invalid operation kind: {kind!r}")
        if not normalized_target:
            raise ValueError("Operation target id is required.")

        template = self.template_for(normalized_kind)
        operation_id, created_at = self._next_operation_id(normalized_kind, normalized_target)
        operation = Operation(
            id=operation_id,
            kind=normalized_kind,
            target_id=normalized_target,
            target_name=str(target_name or ""),
            logs=LogBuffer(self._log_capacity),
            title=template.title if title is None else str(title),
            description=template.description if description is None else str(description),
            steps=template.steps if steps is None else tuple(str(step) for step in steps),
            started_at=created_at,
            estimated_duration_ms=(
                template.estimated_duration_ms if estimated_duration_ms is None else int(estimated_duration_ms)
            ),
        )
        self._operations[operation_id] = operation
        LOGGER.info(
            "Operation started kind=%s steps=%d",
            normalized_kind,
            len(operation.steps),
            extra=_log_extra(operation, "start", "running"),
        )
        self.events.emit(REGISTRY_EVENT_STARTED, operation)
        return operation

    def get(self, operation_id: str) -> Operation | None:
        return self._operations.get(operation_id)

    def operations(self) -> list[Operation]:
        return list(self._operations.values())

    def active(self) -> list[Operation]:
        return [operation for operation in self._operations.values() if operation.is_active]

    def active_count(self) -> int:
        return len(self.active())

    def _mutable(self, operation_id: str, action: str) -> Operation | None:
        operation = self._operations.get(operation_id)
        if operation is None:
            LOGGER.debug("Ignoring %s for unknown operation %s", action, operation_id)
            return None
        if operation.status.is_terminal:
            LOGGER.debug(
                "Ignoring %s for finished operation",
                action,
                extra=_log_extra(operation, action, "ignored_terminal"),
            )
            return None
        return operation

    def update(self, operation_id: str, patch: Mapping[str, Any]) -> Operation | None:
        operation = self._mutable(operation_id, "update")
        if operation is None:
            return None
        for key, value in dict(patch or {}).items():
            field_name = _PATCH_FIELD_ALIASES.get(key)
            if field_name is None or value is None:
                continue
            if field_name == "current_step_index":
                operation.set_step_index(value)
            elif field_name == "progress":
                operation.set_progress(value)
            elif field_name == "estimated_duration_ms":
                if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
                    operation.estimated_duration_ms = int(value)
            else:
                setattr(operation, field_name, str(value))
        operation.recompute_progress()
        self.events.emit(REGISTRY_EVENT_UPDATED, operation)
        return operation

    def append_log(self, operation_id: str, message: str, level: LogLevel | str = LogLevel.INFO) -> None:
        operation = self._mutable(operation_id, "append_log")
        if operation is None:
            return
        entry = operation.logs.add(str(message), level, timestamp=int(self._clock()))
        self.events.emit(REGISTRY_EVENT_LOG, (operation, entry))

    def complete(self, operation_id: str, success: bool, final_message: str | None = None) -> Operation | None:
        operation = self._mutable(operation_id, "complete")
        if operation is None:
            return None
        if final_message:
            self.append_log(operation_id, final_message, LogLevel.SUCCESS if success else LogLevel.ERROR)
        operation.status = OperationStatus.COMPLETED if success else OperationStatus.FAILED
        operation.finished_at = int(self._clock())
        operation.progress = 100

        grace_ms = self._success_grace_ms if success else self._failure_grace_ms
        self._cancel_removal(operation_id)
        self._removal_timers[operation_id] = self._scheduler.call_later(
            grace_ms,
            lambda: self._expire(operation_id),
        )
        if self._refresh is not None and operation.target_id:
            self._refresh_timers[operation_id] = self._scheduler.call_later(
                self._refresh_delay_ms,
                lambda: self._run_refresh(operation),
            )
        LOGGER.info(
            "Operation finished status=%s grace_ms=%d",
            operation.status.value,
            grace_ms,
            extra=_log_extra(
                operation,
                "complete",
                operation.status.value,
                duration_ms=operation.duration_ms(),
            ),
        )
        self.events.emit(REGISTRY_EVENT_COMPLETED, operation)
        return operation

    def _run_refresh(self, operation: Operation) -> None:
        self._refresh_timers.pop(operation.id, None)
        if self._refresh is None:
            return
        try:
            self._refresh(operation)
        except Exception as exc:
            LOGGER.warning(
                "Refresh after operation failed: %s",
                exc,
                extra=_log_extra(operation, "refresh", "error", error_class=type(exc).__name__),
            )

    def _expire(self, operation_id: str) -> None:
        self._removal_timers.pop(operation_id, None)
        self.remove(operation_id)

    def _cancel_removal(self, operation_id: str) -> None:
        handle = self._removal_timers.pop(operation_id, None)
        if handle is not None:
            handle.cancel()

    def remove(self, operation_id: str) -> bool:
        self._cancel_removal(operation_id)
        operation = self._operations.pop(operation_id, None)
        if operation is None:
            return False
        LOGGER.debug("Operation removed", extra=_log_extra(operation, "remove", "removed"))
        self.events.emit(REGISTRY_EVENT_REMOVED, operation)
        return True

    def clear_completed(self) -> int:
        finished = [operation.id for operation in self._operations.values() if operation.status.is_terminal]
        for operation_id in finished:
            self.remove(operation_id)
        return len(finished)

    def close(self) -> None:
        for operation_id in list(self._removal_timers):
            self._cancel_removal(operation_id)
        for handle in self._refresh_timers.values():
            handle.cancel()
        self._refresh_timers.clear()

    def resolve_backend_id(self, backend_id: Any) -> str | None:
        """Map a coarse ``{kind}-{targetId}`` backend id onto a registry id.

        Scans running operations in insertion order and returns the first
        whose kind and target match. Two running operations of the same kind
        on the same target are ambiguous; the earliest registered one wins.
        """
        parsed = split_backend_operation_id(backend_id)
        if parsed is None:
            return None
        kind, target_id = parsed
        for operation in self._operations.values():
            if not operation.is_active:
                continue
            if operation.kind == kind and operation.target_id == target_id:
                return operation.id
        return None

    def handle_backend_event(self, message: Mapping[str, Any]) -> str | None:
        message_type = str(message.get("type") or "")
        backend_id = message.get("operationId")
        operation_id = self.resolve_backend_id(backend_id)
        if operation_id is None:
            LOGGER.debug(
                "No tracked operation for backend id %s type=%s",
                backend_id,
                message_type,
                extra={"component": "registry", "operation": "resolve", "result": "miss"},
            )
            return None

        if message_type == EVENT_OPERATION_PROGRESS:
            patch = {key: value for key, value in message.items() if key not in ("type", "operationId")}
            self.update(operation_id, patch)
        elif message_type == EVENT_OPERATION_LOG:
            self.append_log(operation_id, str(message.get("message") or ""), message.get("logType") or LogLevel.INFO)
        elif message_type == EVENT_OPERATION_STEP:
            self.update(operation_id, {"current_step_index": message.get("step"), "progress": message.get("progress")})
            step_message = message.get("stepMessage")
            if step_message:
                self.append_log(operation_id, str(step_message), LogLevel.INFO)
        elif message_type == EVENT_OPERATION_COMPLETE:
            success = message.get("success", True)
            final_message = message.get("message")
            self.complete(operation_id, bool(success), str(final_message) if final_message else None)
        else:
            LOGGER.debug("Unhandled operation event type=%s", message_type)
        return operation_id

    def __len__(self) -> int:
        return len(self._operations)

    def __contains__(self, operation_id: object) -> bool:
        return operation_id in self._operations

    def __iter__(self) -> Iterator[Operation]:
        return iter(self.operations())

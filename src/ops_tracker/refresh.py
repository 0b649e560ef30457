from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import aiohttp

from ops_tracker.models import Operation


LOGGER = logging.getLogger("ops_tracker.refresh")

DEFAULT_REFRESH_TIMEOUT_S = 10.0


class ProjectsRefresher:
    """Re-reads authoritative project state from the REST backend.

    Called by the registry after an operation finishes. Failures are logged
    and dropped; the next refresh heals any stale view.
    """

    def __init__(
        self,
        api_base: str,
        *,
        on_projects: Callable[[Any], None] | None = None,
        session_factory: Callable[[], aiohttp.ClientSession] | None = None,
        timeout_s: float = DEFAULT_REFRESH_TIMEOUT_S,
    ) -> None:
        self.api_base = str(api_base).rstrip("/")
        self._on_projects = on_projects
        self._session_factory = session_factory or (
            lambda: aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout_s))
        )
        self._session: aiohttp.ClientSession | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def projects_url(self) -> str:
        return f"{self.api_base}/api/projects"

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = self._session_factory()
        return self._session

    async def fetch_projects(self) -> Any:
        session = self._ensure_session()
        async with session.get(self.projects_url, raise_for_status=True) as response:
            return await response.json()

    def __call__(self, operation: Operation) -> None:
        task = asyncio.get_running_loop().create_task(self.refresh(operation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def refresh(self, operation: Operation | None = None) -> Any:
        try:
            projects = await self.fetch_projects()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            LOGGER.warning(
                "Project refresh failed: %s",
                exc,
                extra={
                    "component": "refresh",
                    "operation": "fetch_projects",
                    "operation_id": operation.id if operation is not None else "",
                    "target_id": operation.target_id if operation is not None else "",
                    "result": "error",
                    "error_class": type(exc).__name__,
                },
            )
            return None
        if self._on_projects is not None:
            try:
                self._on_projects(projects)
            except Exception as exc:
                LOGGER.exception(
                    "Projects callback failed",
                    extra={
                        "component": "refresh",
                        "operation": "on_projects",
                        "operation_id": operation.id if operation is not None else "",
                        "target_id": operation.target_id if operation is not None else "",
                        "result": "handler_error",
                        "error_class": type(exc).__name__,
                    },
                )
        return projects

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

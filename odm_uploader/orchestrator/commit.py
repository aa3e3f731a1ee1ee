"""Commit handler - materializes a finished task's outputs to a destination."""
import logging
from typing import Any, Awaitable, Callable, Optional

from ..errors import (
    NoTasksFoundError,
    RemoteTaskError,
    TaskNotReadyError,
    UploaderError,
    ValidationError,
)
from ..models import CommitResult, ProgressEvent, ProgressStage, RemoteId, RemoteTask
from ..protocols import IImageHandlerAPI
from ..utils.events import COMMIT_PROGRESS, EventEmitter

logger = logging.getLogger(__name__)


def _require_project(project_id: RemoteId) -> None:
    if project_id is None or project_id == "":
        raise ValidationError("No project selected")


class CommitService:
    """
    Pre-flight check plus delegation of commit requests.

    No polling here: the task is expected to have been followed to
    completion already, so a single status check decides whether the
    commit is forwarded.
    """

    def __init__(self, api: IImageHandlerAPI, events: Optional[EventEmitter] = None):
        self._api = api
        self._events = events or EventEmitter()

    async def commit_to_map(self, project_id: RemoteId, map_name: str) -> CommitResult:
        """Commit the latest task of a project to a named mapserver target."""
        _require_project(project_id)
        name = (map_name or "").strip()
        if not name:
            raise ValidationError("Map name is required")
        return await self._commit(
            project_id,
            f"map '{name}'",
            lambda task: self._api.commit_task_to_map(project_id, task.id, name),
        )

    async def commit_to_folder(self, project_id: RemoteId, folder_path: str) -> CommitResult:
        """Commit the latest task of a project to an arbitrary folder."""
        _require_project(project_id)
        folder = str(folder_path or "").strip()
        if not folder:
            raise ValidationError("Destination folder is required")
        return await self._commit(
            project_id,
            f"folder {folder}",
            lambda task: self._api.commit_task_to_custom_folder(project_id, task.id, folder),
        )

    async def ensure_ready(self, project_id: RemoteId) -> RemoteTask:
        """
        Resolve the latest task and confirm it completed.

        Raises:
            NoTasksFoundError: Project has no tasks
            RemoteTaskError: Task failed or was canceled
            TaskNotReadyError: Task is still queued or running
        """
        _require_project(project_id)
        tasks = await self._api.get_tasks(project_id)
        if not tasks:
            raise NoTasksFoundError(f"No tasks found for project {project_id}")
        task = tasks[-1]

        progress = await self._api.task_progress(task.id, project_id)
        if progress.failed:
            raise RemoteTaskError(
                progress.last_error or "Task processing failed",
                status=int(progress.status) if progress.status is not None else None,
            )
        if not progress.completed:
            status = progress.status.name if progress.status is not None else "INITIALIZING"
            raise TaskNotReadyError(
                f"Task {task.id} is not complete yet (status: {status}); wait for processing to finish"
            )
        return task

    async def _commit(
        self,
        project_id: RemoteId,
        destination: str,
        send: Callable[[RemoteTask], Awaitable[CommitResult]],
    ) -> CommitResult:
        await self._emit(ProgressStage.CHECKING, 10, "Checking task status...", project_id=project_id)
        try:
            task = await self.ensure_ready(project_id)
            await self._emit(
                ProgressStage.COMMITTING,
                50,
                f"Committing task {task.id} to {destination}...",
                project_id=project_id,
                task_id=task.id,
            )
            result = await send(task)
        except UploaderError as exc:
            logger.error(f"Commit of project {project_id} to {destination} failed: {exc.message}")
            await self._emit(
                ProgressStage.ERROR,
                0,
                f"Commit failed: {exc.message}",
                project_id=project_id,
                error=exc.message,
                details=exc.details,
            )
            raise

        logger.info(f"Committed task {task.id} to {destination}")
        await self._emit(
            ProgressStage.COMPLETED,
            100,
            f"Committed to {destination}",
            project_id=project_id,
            task_id=task.id,
            details=result.raw,
        )
        return result

    async def _emit(self, stage: ProgressStage, percent: float, message: str, **fields: Any) -> None:
        await self._events.emit(
            COMMIT_PROGRESS, ProgressEvent(stage=stage, percent=percent, message=message, **fields)
        )

"""Remote task poller - follows a processing task until it reaches a terminal state."""
import logging
from dataclasses import dataclass, replace
from typing import Any, Optional

from ..errors import (
    NoTasksFoundError,
    OperationCancelledError,
    RemoteAPIError,
    RemoteProtocolError,
    RemoteTaskError,
    PollTimeoutError,
    TransportError,
    ValidationError,
)
from ..models import (
    PollConfig,
    PollState,
    ProgressEvent,
    ProgressStage,
    RemoteId,
    RemoteTask,
    RemoteTaskStatus,
    TaskProgress,
)
from ..protocols import IImageHandlerAPI, IScheduler
from ..utils.events import WEBODM_PROGRESS, EventEmitter
from ..utils.scheduling import AsyncioScheduler, CancellationToken, check_cancelled
from . import progress as normalize

logger = logging.getLogger(__name__)


def raise_for_outcome(event: ProgressEvent) -> ProgressEvent:
    """Turn a non-successful terminal poll event into the matching exception."""
    if event.stage == ProgressStage.TIMEOUT:
        raise PollTimeoutError(event.message)
    if event.stage == ProgressStage.CANCELLED:
        raise OperationCancelledError(event.message)
    if event.stage == ProgressStage.ERROR:
        status = event.details.get("status") if isinstance(event.details, dict) else None
        raise RemoteTaskError(event.error or event.message, status=status, details=event.details)
    return event


@dataclass
class _PollRun:
    """Mutable bookkeeping for one polling loop."""
    task_id: RemoteId
    project_id: RemoteId
    config: PollConfig
    state: PollState = PollState.INITIALIZING
    polls: int = 0
    elapsed_s: float = 0.0
    percent: float = 0.0
    queued_polls: int = 0
    consecutive_errors: int = 0
    seen_running: bool = False


class TaskPoller:
    """
    Polls task-progress on a fixed schedule and normalizes what it reads.

    One status query per iteration; the remote answer decides the next
    state:

        404                       -> INITIALIZING (not an error)
        status 10                 -> QUEUED
        status 20                 -> RUNNING
        status 40 / is_complete   -> COMPLETED   (terminal)
        status 30, 50 / has_error -> FAILED / CANCELED (terminal)
        5xx, 408, 429, transport,
        malformed payload         -> retry with backoff, state unchanged
        other 4xx                 -> FAILED (terminal)

    After `max_polls` iterations without a terminal answer the loop stops
    with TIMEOUT, which means "unknown", not failure.
    """

    def __init__(
        self,
        api: IImageHandlerAPI,
        config: Optional[PollConfig] = None,
        events: Optional[EventEmitter] = None,
        scheduler: Optional[IScheduler] = None,
    ):
        self._api = api
        self._config = config or PollConfig()
        self._events = events or EventEmitter()
        self._scheduler = scheduler or AsyncioScheduler()

    @property
    def config(self) -> PollConfig:
        return self._config

    async def resolve_latest_task(self, project_id: RemoteId) -> RemoteTask:
        """Most recent task of a project (the last one listed)."""
        tasks = await self._api.get_tasks(project_id)
        if not tasks:
            raise NoTasksFoundError(f"No tasks found for project {project_id}")
        task = tasks[-1]
        logger.debug(f"Latest task for project {project_id}: {task.id} ({task.status_name})")
        return task

    async def poll_project(
        self,
        project_id: RemoteId,
        max_polls: Optional[int] = None,
        interval_ms: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ProgressEvent:
        task = await self.resolve_latest_task(project_id)
        return await self.poll_task_progress(task.id, project_id, max_polls, interval_ms, cancel_token)

    async def poll_task_progress(
        self,
        task_id: RemoteId,
        project_id: RemoteId,
        max_polls: Optional[int] = None,
        interval_ms: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ProgressEvent:
        """
        Poll until COMPLETED, FAILED, CANCELED, TIMEOUT or local cancellation.

        Returns:
            The terminal ProgressEvent (also emitted on webodm-progress)
        """
        if task_id is None or task_id == "":
            raise ValidationError("task_id is required")
        if project_id is None or project_id == "":
            raise ValidationError("project_id is required")

        config = self._config
        if max_polls is not None:
            config = replace(config, max_polls=max_polls)
        if interval_ms is not None:
            config = replace(config, interval_ms=interval_ms)

        run = _PollRun(task_id=task_id, project_id=project_id, config=config)
        logger.info(f"Polling task {task_id} (project {project_id}), up to {config.max_polls} polls")

        try:
            while run.polls < config.max_polls:
                check_cancelled(cancel_token)
                run.polls += 1
                event = await self._poll_once(run)
                await self._events.emit(WEBODM_PROGRESS, event)
                if event.is_terminal:
                    logger.info(f"Task {task_id} finished polling in state {run.state.name}")
                    return event
                if run.polls < config.max_polls:
                    delay = normalize.poll_interval(config, run.elapsed_s, run.consecutive_errors)
                    await self._scheduler.sleep(delay, cancel_token)
                    run.elapsed_s += delay
        except OperationCancelledError as exc:
            run.state = PollState.ABORTED
            event = self._event(run, ProgressStage.CANCELLED, run.percent, exc.message, error=exc.message)
            await self._events.emit(WEBODM_PROGRESS, event)
            return event

        run.state = PollState.TIMEOUT
        logger.warning(f"Task {task_id} still not finished after {run.polls} polls")
        event = self._event(
            run,
            ProgressStage.TIMEOUT,
            normalize.timeout_percent(run.seen_running),
            f"Processing did not finish within {run.polls} polls; "
            f"check WebODM directly for task {task_id}",
        )
        await self._events.emit(WEBODM_PROGRESS, event)
        return event

    async def _poll_once(self, run: _PollRun) -> ProgressEvent:
        try:
            progress = await self._api.task_progress(run.task_id, run.project_id)
        except RemoteAPIError as exc:
            if exc.is_not_found:
                return self._initializing(run)
            if exc.is_transient:
                return self._retry(run, exc.message, exc.details)
            return self._fatal(run, exc.message, exc.details)
        except TransportError as exc:
            return self._retry(run, exc.message)
        except RemoteProtocolError as exc:
            return self._retry(run, exc.message, exc.details)
        run.consecutive_errors = 0
        return self._transition(run, progress)

    def _transition(self, run: _PollRun, progress: TaskProgress) -> ProgressEvent:
        if progress.status == RemoteTaskStatus.COMPLETED or (progress.is_complete and not progress.failed):
            run.state = PollState.COMPLETED
            run.percent = normalize.COMPLETED_PERCENT
            return self._event(run, ProgressStage.COMPLETED, run.percent, "Processing complete")

        if progress.failed:
            if progress.status == RemoteTaskStatus.CANCELED:
                run.state = PollState.CANCELED
                error = progress.last_error or "Task was canceled"
            else:
                run.state = PollState.FAILED
                error = progress.last_error or "Processing failed"
            logger.error(f"Task {run.task_id} {run.state.value}: {error}")
            return self._event(
                run,
                ProgressStage.ERROR,
                0,
                f"Processing {run.state.value}: {error}",
                error=error,
                details={"status": int(progress.status) if progress.status is not None else None},
            )

        if progress.status == RemoteTaskStatus.QUEUED:
            run.state = PollState.QUEUED
            run.queued_polls += 1
            run.percent = normalize.queued_percent(run.queued_polls, run.percent)
            return self._event(
                run, ProgressStage.QUEUED, run.percent, "Task queued, waiting for a processing node..."
            )

        if progress.status == RemoteTaskStatus.RUNNING:
            run.state = PollState.RUNNING
            run.seen_running = True
            run.percent = normalize.running_percent(progress, run.percent)
            label = normalize.stage_label(progress)
            completion = normalize.remote_completion(progress)
            return self._event(
                run,
                ProgressStage.RUNNING,
                run.percent,
                f"{label} ({completion:.0f}%)",
                details={
                    "remote_progress": completion,
                    "upload_progress": progress.upload_progress,
                    "resize_progress": progress.resize_progress,
                    "running_progress": progress.running_progress,
                },
            )

        # Known to the node but without a status yet.
        return self._initializing(run)

    def _initializing(self, run: _PollRun) -> ProgressEvent:
        run.consecutive_errors = 0
        run.state = PollState.INITIALIZING
        run.percent = normalize.initializing_percent(run.elapsed_s, run.percent)
        return self._event(
            run,
            ProgressStage.INITIALIZING,
            run.percent,
            normalize.waiting_message(run.elapsed_s),
        )

    def _retry(self, run: _PollRun, error: str, details: Any = None) -> ProgressEvent:
        run.consecutive_errors += 1
        logger.warning(f"Poll {run.polls} for task {run.task_id} failed ({error}), will retry")
        return self._event(
            run,
            ProgressStage.RETRY,
            run.percent,
            f"Status check failed ({error}), retrying...",
            error=error,
            details=details,
        )

    def _fatal(self, run: _PollRun, error: str, details: Any = None) -> ProgressEvent:
        run.state = PollState.FAILED
        logger.error(f"Polling task {run.task_id} stopped: {error}")
        return self._event(
            run,
            ProgressStage.ERROR,
            0,
            f"Polling stopped: {error}",
            error=error,
            details=details,
        )

    @staticmethod
    def _event(run: _PollRun, stage: ProgressStage, percent: float, message: str,
               **fields: Any) -> ProgressEvent:
        return ProgressEvent(
            stage=stage,
            percent=percent,
            message=message,
            task_id=run.task_id,
            project_id=run.project_id,
            state=run.state,
            **fields,
        )

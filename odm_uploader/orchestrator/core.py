"""Core coordinator - owns the client and wires uploads, polling and commits."""
import logging
from dataclasses import asdict, replace
from pathlib import Path
from typing import Callable, List, Optional, Union

from ..errors import UploaderError, ValidationError
from ..models import (
    OperationResult,
    PollConfig,
    ProgressEvent,
    ProgressStage,
    Project,
    RemoteId,
    RemoteTask,
    UploadConfig,
    UploadResult,
)
from ..protocols import ICredentialProvider, IFolderChooser, IImageHandlerAPI, IScheduler
from ..services.api_client import ImageHandlerClient
from ..utils.events import COMMIT_PROGRESS, UPLOAD_PROGRESS, WEBODM_PROGRESS, EventEmitter
from ..utils.scheduling import AsyncioScheduler, CancellationToken
from .batch_upload import BatchUploader
from .commit import CommitService
from .task_poller import TaskPoller

logger = logging.getLogger(__name__)

READY_RETRIES = 20
READY_DELAY_S = 3.0


class ProcessingCoordinator:
    """
    Coordinates uploads, task monitoring and commits against one backend.

    Owns every upload job and polling loop it starts; listeners only
    observe the progress channels. Overlapping jobs against the same
    project are the caller's responsibility to prevent.

    Usage:
        async with ProcessingCoordinator(api_url) as coordinator:
            coordinator.on_upload_progress(print)
            coordinator.on_webodm_progress(print)
            result = await coordinator.select_folder("Field 12", folder)

        # Commit once processing has finished
        result = await coordinator.commit_task_to_map(project_id, "field12")
    """

    def __init__(
        self,
        api_url: str,
        upload_config: Optional[UploadConfig] = None,
        poll_config: Optional[PollConfig] = None,
        credentials: Optional[ICredentialProvider] = None,
        folder_chooser: Optional[IFolderChooser] = None,
        scheduler: Optional[IScheduler] = None,
        api_client: Optional[IImageHandlerAPI] = None,
        timeout: float = 60,
    ):
        """
        Initialize coordinator with dependencies.

        Args:
            api_url: Image request handler base URL
            upload_config: Batch upload configuration
            poll_config: Task polling configuration
            credentials: WebODM token provider passed through to the backend
            folder_chooser: Asks the user for folders when none is given
            scheduler: Wait implementation (tests inject a fake one)
            api_client: Pre-built API client; one is created otherwise
            timeout: Default HTTP timeout in seconds
        """
        self._api_url = api_url
        self._upload_config = upload_config or UploadConfig()
        self._poll_config = poll_config or PollConfig()
        self._credentials = credentials
        self._folder_chooser = folder_chooser
        self._scheduler = scheduler or AsyncioScheduler()
        self._external_api = api_client
        self._timeout = timeout
        self._events = EventEmitter()

        # Initialized in __aenter__
        self._http: Optional[ImageHandlerClient] = None
        self._api: Optional[IImageHandlerAPI] = None
        self._uploader: Optional[BatchUploader] = None
        self._poller: Optional[TaskPoller] = None
        self._commit: Optional[CommitService] = None

    async def __aenter__(self):
        """Initialize client and handlers."""
        if self._external_api is not None:
            self._api = self._external_api
        else:
            self._http = ImageHandlerClient(
                self._api_url,
                timeout=self._timeout,
                credentials=self._credentials,
            )
            await self._http.__aenter__()
            self._api = self._http

        self._uploader = BatchUploader(self._api, self._upload_config, self._events, self._scheduler)
        self._poller = TaskPoller(self._api, self._poll_config, self._events, self._scheduler)
        self._commit = CommitService(self._api, self._events)
        return self

    async def __aexit__(self, *args):
        """Cleanup resources."""
        await self._events.flush()
        if self._http:
            await self._http.__aexit__(*args)
            self._http = None

    @property
    def events(self) -> EventEmitter:
        return self._events

    def on_upload_progress(self, callback: Callable[[ProgressEvent], None]):
        self._events.on(UPLOAD_PROGRESS, callback)

    def on_webodm_progress(self, callback: Callable[[ProgressEvent], None]):
        self._events.on(WEBODM_PROGRESS, callback)

    def on_commit_progress(self, callback: Callable[[ProgressEvent], None]):
        self._events.on(COMMIT_PROGRESS, callback)

    async def wait_until_ready(
        self,
        retries: int = READY_RETRIES,
        delay: float = READY_DELAY_S,
        cancel_token: Optional[CancellationToken] = None,
    ) -> bool:
        """Ping the backend until it answers or `retries` attempts are used."""
        assert self._api is not None
        for attempt in range(1, retries + 1):
            if await self._api.ping():
                return True
            logger.warning(f"Backend not ready yet ({attempt}/{retries})")
            if attempt < retries:
                await self._scheduler.sleep(delay, cancel_token)
        logger.error(f"Backend at {self._api_url} did not become ready")
        return False

    async def select_folder(
        self,
        project_name: str,
        folder_path: Union[str, Path, None] = None,
        monitor: bool = True,
        cancel_token: Optional[CancellationToken] = None,
    ) -> OperationResult:
        """
        Upload a folder of images and, by default, follow the resulting task.

        When no folder is given the folder chooser is asked for one.
        """
        assert self._uploader is not None
        if folder_path is None:
            folder_path = await self._choose("Select image folder")
            if folder_path is None:
                return await self._fail(UPLOAD_PROGRESS, ValidationError("No folder selected"))

        try:
            result = await self._uploader.upload(folder_path, project_name, cancel_token)
        except ValidationError as exc:
            return await self._fail(UPLOAD_PROGRESS, exc)

        if not result.success:
            return OperationResult.fail(result.error or "Upload failed", result.details, data=result.to_dict())

        data = {"upload": result.to_dict()}
        if not monitor:
            return OperationResult.ok(data)

        final = await self._monitor(result, cancel_token)
        data["processing"] = final.to_dict()
        if final.stage == ProgressStage.CANCELLED:
            await self._events.emit(WEBODM_PROGRESS, replace(
                final, stage=ProgressStage.ERROR, message=f"Monitoring cancelled: {final.message}",
            ))
        if final.stage in (ProgressStage.ERROR, ProgressStage.CANCELLED):
            return OperationResult.fail(final.error or final.message, final.details, data=data)
        return OperationResult.ok(data)

    async def _monitor(self, result: UploadResult, cancel_token: Optional[CancellationToken]) -> ProgressEvent:
        """Hand the identifiers from the upload to the poller."""
        assert self._poller is not None
        project_id = result.project_id
        task_id = result.task_id
        if task_id is None:
            try:
                task_id = (await self._poller.resolve_latest_task(project_id)).id
            except UploaderError as exc:
                event = ProgressEvent(
                    stage=ProgressStage.ERROR,
                    percent=0,
                    message=f"Could not find the processing task: {exc.message}",
                    project_id=project_id,
                    error=exc.message,
                    details=exc.details,
                )
                await self._events.emit(WEBODM_PROGRESS, event)
                return event
        return await self._poller.poll_task_progress(task_id, project_id, cancel_token=cancel_token)

    async def poll_task_progress(
        self,
        task_id: Optional[RemoteId],
        project_id: RemoteId,
        max_polls: Optional[int] = None,
        interval_ms: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ProgressEvent:
        """Follow a task; without task_id the project's latest task is used."""
        assert self._poller is not None
        if task_id is None:
            return await self._poller.poll_project(project_id, max_polls, interval_ms, cancel_token)
        return await self._poller.poll_task_progress(task_id, project_id, max_polls, interval_ms, cancel_token)

    async def get_projects(self) -> List[Project]:
        assert self._api is not None
        try:
            return await self._api.get_projects()
        except UploaderError as exc:
            logger.error(f"Failed to fetch projects: {exc.message}")
            return []

    async def get_tasks(self, project_id: RemoteId) -> List[RemoteTask]:
        assert self._api is not None
        try:
            return await self._api.get_tasks(project_id)
        except UploaderError as exc:
            logger.error(f"Failed to fetch tasks for project {project_id}: {exc.message}")
            return []

    async def create_project(self, name: str) -> OperationResult:
        assert self._api is not None
        name = (name or "").strip()
        if not name:
            return OperationResult.fail("Project name is required")
        try:
            project = await self._api.create_project(name)
        except UploaderError as exc:
            logger.error(f"Failed to create project {name!r}: {exc.message}")
            return OperationResult.fail(exc.message, exc.details)
        return OperationResult.ok(asdict(project))

    async def rename_project(self, project_id: RemoteId, new_name: str) -> OperationResult:
        assert self._api is not None
        new_name = (new_name or "").strip()
        if not new_name:
            return OperationResult.fail("New project name is required")
        try:
            ack = await self._api.rename_project(project_id, new_name)
        except UploaderError as exc:
            logger.error(f"Failed to rename project {project_id}: {exc.message}")
            return OperationResult.fail(exc.message, exc.details)
        return OperationResult.ok(ack)

    async def delete_project(self, project_id: RemoteId) -> OperationResult:
        assert self._api is not None
        try:
            ack = await self._api.delete_project(project_id)
        except UploaderError as exc:
            logger.error(f"Failed to delete project {project_id}: {exc.message}")
            return OperationResult.fail(exc.message, exc.details)
        return OperationResult.ok(ack)

    async def commit_task_to_map(self, project_id: RemoteId, name: str) -> OperationResult:
        assert self._commit is not None
        try:
            result = await self._commit.commit_to_map(project_id, name)
        except ValidationError as exc:
            return await self._fail(COMMIT_PROGRESS, exc)
        except UploaderError as exc:
            return OperationResult.fail(exc.message, exc.details)
        return OperationResult.ok(result.raw)

    async def commit_task_to_custom_folder(
        self,
        project_id: RemoteId,
        folder_path: Union[str, Path, None] = None,
    ) -> OperationResult:
        assert self._commit is not None
        if folder_path is None:
            folder_path = await self.select_commit_folder()
            if folder_path is None:
                return await self._fail(COMMIT_PROGRESS, ValidationError("No destination folder selected"))
        try:
            result = await self._commit.commit_to_folder(project_id, str(folder_path))
        except ValidationError as exc:
            return await self._fail(COMMIT_PROGRESS, exc)
        except UploaderError as exc:
            return OperationResult.fail(exc.message, exc.details)
        return OperationResult.ok(result.raw)

    async def select_commit_folder(self) -> Optional[Path]:
        return await self._choose("Select destination folder")

    async def _choose(self, title: str) -> Optional[Path]:
        if self._folder_chooser is None:
            logger.debug("No folder chooser configured")
            return None
        return await self._folder_chooser.choose_folder(title)

    async def _fail(self, channel: str, exc: UploaderError) -> OperationResult:
        """Report a pre-flight error on a channel and as a result."""
        await self._events.emit(
            channel,
            ProgressEvent(
                stage=ProgressStage.ERROR,
                percent=0,
                message=exc.message,
                error=exc.message,
                details=exc.details,
            ),
        )
        return OperationResult.fail(exc.message, exc.details)

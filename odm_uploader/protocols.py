"""
Protocols (Interfaces) for Dependency Inversion.

Small, focused interfaces so the core loops can run against fakes.
"""
from pathlib import Path
from typing import Optional, Any, Callable, List, Protocol, Sequence, runtime_checkable

from .models import (
    CommitResult,
    Project,
    PushImagesResponse,
    RemoteId,
    RemoteTask,
    TaskProgress,
)

ByteProgressCallback = Callable[[int, int], None]


@runtime_checkable
class IImageHandlerAPI(Protocol):
    """Interface for the image request handler HTTP API."""

    async def ping(self) -> bool:
        ...

    async def get_projects(self) -> List[Project]:
        ...

    async def create_project(self, name: str) -> Project:
        ...

    async def rename_project(self, project_id: RemoteId, new_name: str) -> Any:
        ...

    async def delete_project(self, project_id: RemoteId) -> Any:
        ...

    async def get_tasks(self, project_id: RemoteId) -> List[RemoteTask]:
        ...

    async def push_images(
        self,
        project_name: str,
        files: Sequence[Path],
        timeout: Optional[float] = None,
        progress_callback: Optional[ByteProgressCallback] = None,
        field_name: str = "images",
    ) -> PushImagesResponse:
        """Upload one batch as a multipart request."""
        ...

    async def task_progress(self, task_id: RemoteId, project_id: RemoteId) -> TaskProgress:
        ...

    async def commit_task_to_map(
        self, project_id: RemoteId, task_id: RemoteId, map_name: str
    ) -> CommitResult:
        ...

    async def commit_task_to_custom_folder(
        self, project_id: RemoteId, task_id: RemoteId, folder_path: str
    ) -> CommitResult:
        ...


@runtime_checkable
class ICredentialProvider(Protocol):
    """Interface for backend credentials."""

    async def get_token(self) -> str:
        ...


@runtime_checkable
class IScheduler(Protocol):
    """Interface for suspension points between network calls."""

    async def sleep(self, seconds: float, cancel_token=None) -> None:
        """Wait, raising OperationCancelledError if the token fires."""
        ...


@runtime_checkable
class IFolderChooser(Protocol):
    """Interface for asking the user for a directory."""

    async def choose_folder(self, title: str) -> Optional[Path]:
        ...

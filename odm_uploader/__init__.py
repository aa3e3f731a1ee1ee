"""
odm_uploader - batch image uploads and task monitoring for WebODM.

Pushes a folder of JPEG images to the image request handler in batches,
follows the resulting processing task until an orthophoto is ready and
commits the outputs to a mapserver target or a folder.

Usage:
    from odm_uploader import ProcessingCoordinator, UploadConfig

    async with ProcessingCoordinator(api_url, UploadConfig(batch_size=200)) as coordinator:
        coordinator.on_upload_progress(lambda event: print(event.message))
        coordinator.on_webodm_progress(lambda event: print(event.percent, event.message))
        result = await coordinator.select_folder("Field 12", "/data/flight-12")

    # Commit once processing is done
    result = await coordinator.commit_task_to_map(project_id, "field12")
"""
from .config import Settings
from .errors import (
    UploaderError,
    ValidationError,
    NotFoundError,
    NoImagesFoundError,
    NoTasksFoundError,
    TransportError,
    RemoteAPIError,
    RemoteProtocolError,
    RemoteTaskError,
    TaskNotReadyError,
    PollTimeoutError,
    OperationCancelledError,
)
from .models import (
    UploadConfig,
    PollConfig,
    UploadResult,
    BatchResult,
    ProgressEvent,
    ProgressStage,
    PollState,
    RemoteTaskStatus,
    OperationResult,
)
from .orchestrator import ProcessingCoordinator, BatchUploader, TaskPoller, CommitService
from .services import ImageHandlerClient, WebODMTokenProvider
from .utils.scheduling import CancellationToken

__version__ = "0.1.0"
__all__ = [
    # Main
    "ProcessingCoordinator",
    "BatchUploader",
    "TaskPoller",
    "CommitService",
    # Models
    "UploadConfig",
    "PollConfig",
    "UploadResult",
    "BatchResult",
    "ProgressEvent",
    "ProgressStage",
    "PollState",
    "RemoteTaskStatus",
    "OperationResult",
    "Settings",
    "CancellationToken",
    # Services
    "ImageHandlerClient",
    "WebODMTokenProvider",
    # Errors
    "UploaderError",
    "ValidationError",
    "NotFoundError",
    "NoImagesFoundError",
    "NoTasksFoundError",
    "TransportError",
    "RemoteAPIError",
    "RemoteProtocolError",
    "RemoteTaskError",
    "TaskNotReadyError",
    "PollTimeoutError",
    "OperationCancelledError",
]

"""
Models for odm_uploader.

Transient dataclasses: configuration, upload bookkeeping, normalized
remote payloads and progress events. Nothing here is persisted.
"""
import math
from dataclasses import dataclass, field, asdict
from enum import Enum, IntEnum
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple, Union

from .errors import RemoteProtocolError, ValidationError

MiB = 1024 * 1024

RemoteId = Union[int, str]


@dataclass(frozen=True)
class UploadConfig:
    """Immutable configuration for batch uploads."""
    batch_size: int = 1000
    max_file_size_bytes: int = 50 * MiB
    inter_batch_delay_ms: int = 2000
    request_timeout_ms: int = 600_000
    prepare_progress_every: int = 25  # files between "preparing" events
    image_extensions: Tuple[str, ...] = (".jpg", ".jpeg")
    form_field: str = "images"
    batch_retries: int = 0  # extra attempts for a failed batch

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValidationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_file_size_bytes < 1:
            raise ValidationError("max_file_size_bytes must be positive")
        if self.inter_batch_delay_ms < 0:
            raise ValidationError("inter_batch_delay_ms cannot be negative")
        if self.request_timeout_ms < 1:
            raise ValidationError("request_timeout_ms must be positive")
        if self.prepare_progress_every < 1:
            raise ValidationError("prepare_progress_every must be >= 1")
        if self.batch_retries < 0:
            raise ValidationError("batch_retries cannot be negative")

    @property
    def request_timeout(self) -> float:
        return self.request_timeout_ms / 1000

    @property
    def inter_batch_delay(self) -> float:
        return self.inter_batch_delay_ms / 1000


@dataclass(frozen=True)
class PollConfig:
    """Immutable configuration for remote task polling."""
    max_polls: int = 360
    interval_ms: int = 5000
    slow_after_s: int = 300      # ~5 min: interval x2
    slower_after_s: int = 1200   # ~20 min: interval x3
    max_retry_interval_ms: int = 60_000

    def __post_init__(self):
        if self.max_polls < 1:
            raise ValidationError(f"max_polls must be >= 1, got {self.max_polls}")
        if self.interval_ms < 0:
            raise ValidationError("interval_ms cannot be negative")


@dataclass
class Batch:
    """Contiguous slice of an upload job."""
    index: int
    files: List[Path]
    accepted: List[Path] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.files)


@dataclass
class UploadJob:
    """One upload run: folder, project and the ordered image list."""
    source_folder: Path
    project_name: str
    files: List[Path]
    batch_size: int
    max_file_size_bytes: int

    @property
    def total_batches(self) -> int:
        return math.ceil(len(self.files) / self.batch_size) if self.files else 0

    def batches(self) -> List[Batch]:
        return [
            Batch(index=i, files=self.files[start:start + self.batch_size])
            for i, start in enumerate(range(0, len(self.files), self.batch_size))
        ]


def _require_dict(payload: Any, what: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise RemoteProtocolError(
            f"Expected JSON object for {what}, got {type(payload).__name__}",
            details=payload,
        )
    return payload


def _require_id(payload: Dict[str, Any], key: str, what: str) -> RemoteId:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, str)) or value == "":
        raise RemoteProtocolError(f"{what} response is missing '{key}'", details=payload)
    return value


def _optional_float(payload: Dict[str, Any], key: str) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RemoteProtocolError(f"'{key}' must be numeric", details=payload)
    return float(value)


class RemoteTaskStatus(IntEnum):
    """Status codes owned by the processing node."""
    QUEUED = 10
    RUNNING = 20
    FAILED = 30
    COMPLETED = 40
    CANCELED = 50


@dataclass(frozen=True)
class Project:
    id: RemoteId
    name: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "Project":
        data = _require_dict(payload, "project")
        return cls(id=_require_id(data, "id", "Project"), name=str(data.get("name") or ""))


@dataclass(frozen=True)
class RemoteTask:
    """Task as listed by the processing node; identifiers are never local."""
    id: RemoteId
    project_id: Optional[RemoteId] = None
    name: str = ""
    status: Optional[int] = None
    images_count: Optional[int] = None
    created_at: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any, project_id: Optional[RemoteId] = None) -> "RemoteTask":
        data = _require_dict(payload, "task")
        status = data.get("status")
        if status is not None and (isinstance(status, bool) or not isinstance(status, int)):
            raise RemoteProtocolError("Task 'status' must be an integer", details=data)
        return cls(
            id=_require_id(data, "id", "Task"),
            project_id=data.get("project_id", project_id),
            name=str(data.get("name") or ""),
            status=status,
            images_count=data.get("images_count"),
            created_at=data.get("created_at"),
        )

    @property
    def status_name(self) -> str:
        try:
            return RemoteTaskStatus(self.status).name
        except ValueError:
            return "UNKNOWN"


@dataclass(frozen=True)
class PushImagesResponse:
    """Normalized push-images response."""
    project_id: RemoteId
    task_id: Optional[RemoteId] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, payload: Any) -> "PushImagesResponse":
        data = _require_dict(payload, "push-images")
        task_id = data.get("task_id")
        if task_id is not None and (isinstance(task_id, bool) or not isinstance(task_id, (int, str))):
            raise RemoteProtocolError("push-images 'task_id' must be an id", details=data)
        return cls(
            project_id=_require_id(data, "project_id", "push-images"),
            task_id=task_id,
            raw=data,
        )


@dataclass(frozen=True)
class TaskProgress:
    """Normalized task-progress payload."""
    status: Optional[RemoteTaskStatus] = None
    progress: Optional[float] = None
    stage: Optional[str] = None
    upload_progress: Optional[float] = None
    resize_progress: Optional[float] = None
    running_progress: Optional[float] = None
    is_complete: bool = False
    has_error: bool = False
    last_error: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "TaskProgress":
        data = _require_dict(payload, "task-progress")
        raw_status = data.get("status")
        status = None
        if raw_status is not None:
            if isinstance(raw_status, bool) or not isinstance(raw_status, int):
                raise RemoteProtocolError("'status' must be an integer", details=data)
            try:
                status = RemoteTaskStatus(raw_status)
            except ValueError:
                raise RemoteProtocolError(f"Unknown task status {raw_status}", details=data)
        last_error = data.get("last_error")
        return cls(
            status=status,
            progress=_optional_float(data, "progress"),
            stage=data.get("stage") or None,
            upload_progress=_optional_float(data, "upload_progress"),
            resize_progress=_optional_float(data, "resize_progress"),
            running_progress=_optional_float(data, "running_progress"),
            is_complete=bool(data.get("is_complete", False)),
            has_error=bool(data.get("has_error", False)),
            last_error=str(last_error) if last_error else None,
        )

    @property
    def completed(self) -> bool:
        return self.status == RemoteTaskStatus.COMPLETED or self.is_complete

    @property
    def failed(self) -> bool:
        return self.status in (RemoteTaskStatus.FAILED, RemoteTaskStatus.CANCELED) or self.has_error


@dataclass(frozen=True)
class CommitResult:
    """Outputs materialized by a commit request."""
    orthophoto_path: Optional[str] = None
    shapefile_path: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, payload: Any) -> "CommitResult":
        data = _require_dict(payload, "commit")
        return cls(
            orthophoto_path=data.get("orthophotoPath"),
            shapefile_path=data.get("shapefilePath"),
            raw=data,
        )


@dataclass(frozen=True)
class BatchResult:
    """Outcome of a single batch request."""
    batch_index: int
    success: bool
    files_uploaded: int = 0
    files_attempted: int = 0
    files_skipped: int = 0
    data: Optional[PushImagesResponse] = None
    error: Optional[str] = None
    details: Any = None

    @classmethod
    def ok(cls, batch_index: int, files_uploaded: int, data: PushImagesResponse, files_skipped: int = 0):
        return cls(
            batch_index=batch_index,
            success=True,
            files_uploaded=files_uploaded,
            files_attempted=files_uploaded,
            files_skipped=files_skipped,
            data=data,
        )

    @classmethod
    def fail(cls, batch_index: int, files_attempted: int, error: str, details: Any = None,
             files_skipped: int = 0):
        return cls(
            batch_index=batch_index,
            success=False,
            files_attempted=files_attempted,
            files_skipped=files_skipped,
            error=error,
            details=details,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"batchIndex": self.batch_index, "success": self.success}
        if self.success:
            result["filesUploaded"] = self.files_uploaded
            result["data"] = self.data.raw if self.data else None
        else:
            result["error"] = self.error
            result["filesAttempted"] = self.files_attempted
            result["details"] = self.details
        return result


@dataclass
class UploadResult:
    """Aggregate of every batch outcome of an upload job."""
    success: bool
    total_files: int = 0
    total_uploaded: int = 0
    total_skipped: int = 0
    total_batches: int = 0
    successful_batches: int = 0
    failed_batches: int = 0
    batch_results: List[BatchResult] = field(default_factory=list)
    error: Optional[str] = None
    details: Any = None

    @classmethod
    def failure(cls, error: str, details: Any = None) -> "UploadResult":
        return cls(success=False, error=error, details=details)

    @property
    def attempted_batches(self) -> int:
        return self.successful_batches + self.failed_batches

    @property
    def last_response(self) -> Optional[PushImagesResponse]:
        for result in reversed(self.batch_results):
            if result.success and result.data is not None:
                return result.data
        return None

    @property
    def task_id(self) -> Optional[RemoteId]:
        response = self.last_response
        return response.task_id if response else None

    @property
    def project_id(self) -> Optional[RemoteId]:
        response = self.last_response
        return response.project_id if response else None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "totalFiles": self.total_files,
            "totalUploaded": self.total_uploaded,
            "totalSkipped": self.total_skipped,
            "totalBatches": self.total_batches,
            "successfulBatches": self.successful_batches,
            "failedBatches": self.failed_batches,
            "results": [r.to_dict() for r in self.batch_results],
        }
        if self.error:
            data["error"] = self.error
            data["details"] = self.details
        return data


class PollState(Enum):
    """Local view of a remote task while polling."""
    INITIALIZING = "initializing"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"
    TIMEOUT = "timeout"
    ABORTED = "aborted"  # local cancellation


class ProgressStage(str, Enum):
    STARTING = "starting"
    PREPARING = "preparing"
    UPLOADING = "uploading"
    BATCH_COMPLETED = "batch_completed"
    BATCH_ERROR = "batch_error"
    WAITING = "waiting"
    INITIALIZING = "initializing"
    QUEUED = "queued"
    RUNNING = "running"
    RETRY = "retry"
    CHECKING = "checking"
    COMMITTING = "committing"
    COMPLETED = "completed"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


TERMINAL_STAGES = frozenset({
    ProgressStage.COMPLETED,
    ProgressStage.ERROR,
    ProgressStage.TIMEOUT,
    ProgressStage.CANCELLED,
})


@dataclass(frozen=True)
class ProgressEvent:
    """Point-in-time progress snapshot sent to listeners."""
    stage: ProgressStage
    percent: float
    message: str
    total_files: Optional[int] = None
    total_batches: Optional[int] = None
    batch_index: Optional[int] = None  # 0-based
    files_processed: Optional[int] = None
    bytes_uploaded: Optional[int] = None
    bytes_total: Optional[int] = None
    task_id: Optional[RemoteId] = None
    project_id: Optional[RemoteId] = None
    state: Optional[PollState] = None
    error: Optional[str] = None
    details: Any = None

    def __post_init__(self):
        object.__setattr__(self, "percent", max(0.0, min(100.0, float(self.percent))))

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def to_dict(self) -> Dict[str, Any]:
        data = {k: v for k, v in asdict(self).items() if v is not None}
        data["stage"] = self.stage.value
        if self.state is not None:
            data["state"] = self.state.value
        return data


@dataclass(frozen=True)
class OperationResult:
    """Machine-usable result of a coordinator operation."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    details: Any = None

    @classmethod
    def ok(cls, data: Any = None):
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, details: Any = None, data: Any = None):
        return cls(success=False, error=error, details=details, data=data)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        result = {"success": False, "error": self.error, "details": self.details}
        if self.data is not None:
            result["data"] = self.data
        return result

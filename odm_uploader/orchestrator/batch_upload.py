"""Batch upload handler - scans a folder and pushes images in size-bounded batches."""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..errors import (
    NoImagesFoundError,
    OperationCancelledError,
    RemoteAPIError,
    UploaderError,
    ValidationError,
)
from ..models import (
    Batch,
    BatchResult,
    ProgressEvent,
    ProgressStage,
    UploadConfig,
    UploadJob,
    UploadResult,
)
from ..protocols import IImageHandlerAPI, IScheduler
from ..utils.events import UPLOAD_PROGRESS, EventEmitter
from ..utils.scheduling import AsyncioScheduler, CancellationToken, check_cancelled
from .file_collector import FileCollector

logger = logging.getLogger(__name__)

# Share of a batch's progress budget taken by preparation; the request takes the rest.
PREPARE_SHARE = 0.5


class BatchUploader:
    """
    Uploads a folder of JPEG images to the image request handler.

    Each batch is one multipart request. A failed batch is recorded and the
    job moves on to the next one; only errors outside the batch loop end the
    job early.

    Usage:
        uploader = BatchUploader(api, UploadConfig(batch_size=200), events)
        events.on("upload-progress", print)
        result = await uploader.upload(folder, "Field 12")
    """

    def __init__(
        self,
        api: IImageHandlerAPI,
        config: Optional[UploadConfig] = None,
        events: Optional[EventEmitter] = None,
        scheduler: Optional[IScheduler] = None,
        collector: Optional[FileCollector] = None,
    ):
        self._api = api
        self._config = config or UploadConfig()
        self._events = events or EventEmitter()
        self._scheduler = scheduler or AsyncioScheduler()
        self._collector = collector or FileCollector()

    @property
    def config(self) -> UploadConfig:
        return self._config

    async def upload(
        self,
        folder_path: Union[str, Path, None],
        project_name: Optional[str],
        cancel_token: Optional[CancellationToken] = None,
    ) -> UploadResult:
        """
        Upload every eligible image of a folder.

        Raises:
            ValidationError: Empty project name or folder is not a directory
        """
        name = (project_name or "").strip()
        if not name:
            raise ValidationError("Project name is required")
        if folder_path is None or str(folder_path).strip() == "":
            raise ValidationError("No folder selected")
        folder = Path(folder_path).expanduser()
        if not folder.is_dir():
            raise ValidationError(f"Folder does not exist or is not a directory: {folder}")

        try:
            job = self._build_job(folder, name)
        except NoImagesFoundError as exc:
            logger.warning(f"{exc.message}: {folder}")
            await self._emit_terminal_error(exc.message)
            return UploadResult.failure(exc.message)
        except OSError as exc:
            message = f"Could not read folder {folder}: {exc}"
            logger.error(message)
            await self._emit_terminal_error(message, details=str(exc))
            return UploadResult.failure(message, details=str(exc))

        return await self._run(job, cancel_token)

    def _build_job(self, folder: Path, project_name: str) -> UploadJob:
        files = self._collector.collect_images(folder, self._config.image_extensions)
        if not files:
            raise NoImagesFoundError()
        logger.info(f"Found {len(files)} images in {folder}")
        return UploadJob(
            source_folder=folder,
            project_name=project_name,
            files=files,
            batch_size=self._config.batch_size,
            max_file_size_bytes=self._config.max_file_size_bytes,
        )

    async def _run(self, job: UploadJob, cancel_token: Optional[CancellationToken]) -> UploadResult:
        total_batches = job.total_batches
        result = UploadResult(
            success=False,
            total_files=len(job.files),
            total_batches=total_batches,
        )
        await self._emit(
            job,
            ProgressStage.STARTING,
            0,
            f"Starting upload of {len(job.files)} images in {total_batches} batch(es)",
        )

        processed = 0
        batches = job.batches()
        try:
            for batch in batches:
                check_cancelled(cancel_token)
                sizes = await self._prepare(job, batch, processed)
                processed += len(batch)
                result.total_skipped += len(batch.skipped)

                if not batch.accepted:
                    logger.warning(
                        f"Batch {batch.index + 1}/{total_batches}: every file exceeds the size limit, skipping"
                    )
                    continue

                batch_result = await self._send_with_retries(job, batch, sizes, cancel_token)
                result.batch_results.append(batch_result)
                if batch_result.success:
                    result.successful_batches += 1
                    result.total_uploaded += batch_result.files_uploaded
                else:
                    result.failed_batches += 1

                if batch.index < total_batches - 1:
                    await self._emit(
                        job,
                        ProgressStage.WAITING,
                        self._percent(job, batch, 1.0),
                        f"Waiting {self._config.inter_batch_delay:.0f}s before next batch...",
                        batch_index=batch.index,
                    )
                    await self._scheduler.sleep(self._config.inter_batch_delay, cancel_token)
        except OperationCancelledError as exc:
            await self._events.flush()
            result.error = exc.message
            logger.info(f"Upload cancelled after {result.attempted_batches} batch(es)")
            await self._emit(
                job,
                ProgressStage.CANCELLED,
                processed / len(job.files) * 100,
                exc.message,
                error=exc.message,
            )
            await self._emit(
                job,
                ProgressStage.ERROR,
                processed / len(job.files) * 100,
                f"Upload cancelled: {exc.message}",
                error=exc.message,
            )
            return result

        return await self._finish(job, result)

    async def _prepare(self, job: UploadJob, batch: Batch, processed_before: int) -> Dict[Path, int]:
        """Split a batch into accepted and oversized files."""
        every = self._config.prepare_progress_every
        await self._emit(
            job,
            ProgressStage.PREPARING,
            self._percent(job, batch, 0.0),
            f"Preparing batch {batch.index + 1}/{job.total_batches} ({len(batch)} files)",
            batch_index=batch.index,
            files_processed=processed_before,
        )

        sizes: Dict[Path, int] = {}
        for position, path in enumerate(batch.files, start=1):
            try:
                size = path.stat().st_size
            except OSError as exc:
                logger.warning(f"Cannot stat {path.name}, skipping: {exc}")
                batch.skipped.append(path)
                size = None

            if size is not None:
                if size > job.max_file_size_bytes:
                    logger.warning(
                        f"Skipping {path.name}: {size} bytes exceeds limit of {job.max_file_size_bytes}"
                    )
                    batch.skipped.append(path)
                else:
                    batch.accepted.append(path)
                    sizes[path] = size

            files_processed = processed_before + position
            if files_processed % every == 0:
                await self._emit(
                    job,
                    ProgressStage.PREPARING,
                    self._percent(job, batch, PREPARE_SHARE * position / len(batch)),
                    f"Prepared {files_processed}/{len(job.files)} images",
                    batch_index=batch.index,
                    files_processed=files_processed,
                )
        return sizes

    async def _send_with_retries(
        self,
        job: UploadJob,
        batch: Batch,
        sizes: Dict[Path, int],
        cancel_token: Optional[CancellationToken],
    ) -> BatchResult:
        attempts = 1 + self._config.batch_retries
        # Highest percent reported for this batch; retries never move the bar back.
        peak = [self._percent(job, batch, PREPARE_SHARE)]
        batch_result = None
        for attempt in range(1, attempts + 1):
            batch_result = await self._send_batch(job, batch, sizes, cancel_token, peak)
            if batch_result.success or attempt == attempts:
                break
            await self._emit(
                job,
                ProgressStage.RETRY,
                peak[0],
                f"Batch {batch.index + 1} failed ({batch_result.error}), retry {attempt}/{attempts - 1}",
                batch_index=batch.index,
                error=batch_result.error,
            )
            await self._scheduler.sleep(self._config.inter_batch_delay, cancel_token)

        if batch_result.success:
            await self._emit(
                job,
                ProgressStage.BATCH_COMPLETED,
                self._percent(job, batch, 1.0),
                f"Batch {batch.index + 1}/{job.total_batches} uploaded ({batch_result.files_uploaded} files)",
                batch_index=batch.index,
                task_id=batch_result.data.task_id,
                project_id=batch_result.data.project_id,
            )
        else:
            await self._emit(
                job,
                ProgressStage.BATCH_ERROR,
                self._percent(job, batch, 1.0),
                f"Batch {batch.index + 1}/{job.total_batches} failed: {batch_result.error}",
                batch_index=batch.index,
                error=batch_result.error,
                details=batch_result.details,
            )
        return batch_result

    async def _send_batch(
        self,
        job: UploadJob,
        batch: Batch,
        sizes: Dict[Path, int],
        cancel_token: Optional[CancellationToken],
        peak: List[float],
    ) -> BatchResult:
        bytes_total = sum(sizes.values())
        await self._emit(
            job,
            ProgressStage.UPLOADING,
            peak[0],
            f"Uploading batch {batch.index + 1}/{job.total_batches} ({len(batch.accepted)} files)",
            batch_index=batch.index,
            bytes_uploaded=0,
            bytes_total=bytes_total,
        )

        last_step = [-1]

        def on_bytes(sent: int, total: int) -> None:
            share = sent / total if total else 1.0
            step = int(share * 100)
            if step <= last_step[0]:
                return
            last_step[0] = step
            peak[0] = max(peak[0], self._percent(job, batch, PREPARE_SHARE + (1 - PREPARE_SHARE) * share))
            self._events.emit_nowait(
                UPLOAD_PROGRESS,
                self._event(
                    job,
                    ProgressStage.UPLOADING,
                    peak[0],
                    f"Uploading batch {batch.index + 1}/{job.total_batches}: {step}%",
                    batch_index=batch.index,
                    bytes_uploaded=sent,
                    bytes_total=total,
                ),
            )

        check_cancelled(cancel_token)
        try:
            response = await self._api.push_images(
                job.project_name,
                batch.accepted,
                timeout=self._config.request_timeout,
                progress_callback=on_bytes,
                field_name=self._config.form_field,
            )
        except OperationCancelledError:
            raise
        except (UploaderError, OSError) as exc:
            await self._events.flush()
            error = exc.message if isinstance(exc, UploaderError) else str(exc)
            details = exc.details if isinstance(exc, RemoteAPIError) else None
            logger.error(f"Batch {batch.index + 1}/{job.total_batches} failed: {error}")
            return BatchResult.fail(
                batch.index,
                files_attempted=len(batch.accepted),
                error=error,
                details=details,
                files_skipped=len(batch.skipped),
            )

        await self._events.flush()
        logger.info(
            f"Batch {batch.index + 1}/{job.total_batches} uploaded: {len(batch.accepted)} files "
            f"(project={response.project_id}, task={response.task_id})"
        )
        return BatchResult.ok(
            batch.index,
            files_uploaded=len(batch.accepted),
            data=response,
            files_skipped=len(batch.skipped),
        )

    async def _finish(self, job: UploadJob, result: UploadResult) -> UploadResult:
        result.success = result.successful_batches > 0
        summary = (
            f"{result.total_uploaded} uploaded, {result.total_skipped} skipped, "
            f"{result.failed_batches} failed batch(es)"
        )
        if result.success:
            logger.info(f"Upload finished: {summary}")
            await self._emit(job, ProgressStage.COMPLETED, 100, f"Upload finished: {summary}")
            return result

        if result.attempted_batches == 0:
            result.error = "No images were uploaded: every file exceeds the size limit"
        else:
            result.error = f"All {result.failed_batches} batch(es) failed"
            last_failure = result.batch_results[-1]
            result.details = last_failure.details if last_failure.details is not None else last_failure.error
        logger.error(f"Upload failed: {result.error}")
        await self._emit(
            job,
            ProgressStage.ERROR,
            100,
            f"Upload failed: {result.error}",
            error=result.error,
            details=result.details,
        )
        return result

    @staticmethod
    def _percent(job: UploadJob, batch: Batch, batch_share: float) -> float:
        return (batch.index + batch_share) / job.total_batches * 100

    @staticmethod
    def _event(job: Optional[UploadJob], stage: ProgressStage, percent: float, message: str,
               **fields: Any) -> ProgressEvent:
        if job is not None:
            fields.setdefault("total_files", len(job.files))
            fields.setdefault("total_batches", job.total_batches)
        return ProgressEvent(stage=stage, percent=percent, message=message, **fields)

    async def _emit(self, job: Optional[UploadJob], stage: ProgressStage, percent: float,
                    message: str, **fields: Any) -> None:
        await self._events.emit(UPLOAD_PROGRESS, self._event(job, stage, percent, message, **fields))

    async def _emit_terminal_error(self, message: str, details: Any = None) -> None:
        await self._emit(None, ProgressStage.ERROR, 0, message, error=message, details=details)

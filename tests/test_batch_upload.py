"""Tests for the batch upload handler."""
from unittest.mock import AsyncMock, Mock

import pytest

from odm_uploader.errors import RemoteAPIError, TransportError, ValidationError
from odm_uploader.models import ProgressStage, PushImagesResponse, UploadConfig
from odm_uploader.orchestrator.batch_upload import BatchUploader
from odm_uploader.orchestrator.file_collector import FileCollector
from odm_uploader.utils.events import UPLOAD_PROGRESS, EventEmitter
from odm_uploader.utils.scheduling import CancellationToken


def _response(task_id="t1"):
    return PushImagesResponse(project_id=7, task_id=task_id, raw={"project_id": 7, "task_id": task_id})


@pytest.fixture
def mock_api():
    api = Mock()
    api.push_images = AsyncMock(return_value=_response())
    return api


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def recorded(events):
    seen = []
    events.on(UPLOAD_PROGRESS, seen.append)
    return seen


def _stages(recorded):
    return [event.stage for event in recorded]


class TestBatchUploader:
    @pytest.mark.asyncio
    async def test_single_batch_upload(self, mock_api, events, recorded, scheduler, image_folder):
        uploader = BatchUploader(mock_api, UploadConfig(), events, scheduler)

        result = await uploader.upload(image_folder, "Field 12")

        assert result.success
        assert result.total_files == 3
        assert result.total_uploaded == 3
        assert result.total_batches == 1
        assert result.successful_batches == 1
        assert result.task_id == "t1"
        assert result.project_id == 7

        mock_api.push_images.assert_awaited_once()
        args, kwargs = mock_api.push_images.call_args
        assert args[0] == "Field 12"
        assert len(args[1]) == 3
        assert kwargs["timeout"] == 600.0
        assert kwargs["field_name"] == "images"
        assert scheduler.sleeps == []

        assert recorded[0].stage == ProgressStage.STARTING
        assert recorded[-1].stage == ProgressStage.COMPLETED
        assert recorded[-1].percent == 100.0
        assert ProgressStage.BATCH_COMPLETED in _stages(recorded)

    @pytest.mark.asyncio
    async def test_percent_never_decreases(self, mock_api, events, recorded, scheduler, tmp_path, make_images):
        make_images(tmp_path, [f"IMG_{i:03d}.jpg" for i in range(7)])
        uploader = BatchUploader(mock_api, UploadConfig(batch_size=3, prepare_progress_every=2), events, scheduler)

        await uploader.upload(tmp_path, "Field 12")

        percents = [event.percent for event in recorded]
        assert percents == sorted(percents)
        assert all(event.total_batches == 3 for event in recorded)

    @pytest.mark.asyncio
    async def test_batches_follow_collection_order(self, mock_api, events, scheduler, tmp_path, make_images):
        make_images(tmp_path, [f"IMG_{i:03d}.jpg" for i in range(5)])
        uploader = BatchUploader(mock_api, UploadConfig(batch_size=2), events, scheduler)

        result = await uploader.upload(tmp_path, "Field 12")

        sent = [call.args[1] for call in mock_api.push_images.call_args_list]
        assert [len(files) for files in sent] == [2, 2, 1]
        assert [f for files in sent for f in files] == FileCollector.collect_images(tmp_path)
        assert result.total_batches == 3
        # One pause between consecutive batches, none after the last.
        assert scheduler.sleeps == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_no_images_reports_error_without_network(self, mock_api, events, recorded, scheduler, tmp_path):
        (tmp_path / "readme.txt").write_text("no images here")
        uploader = BatchUploader(mock_api, UploadConfig(), events, scheduler)

        result = await uploader.upload(tmp_path, "Field 12")

        assert not result.success
        assert result.error == "No JPG images found in folder"
        mock_api.push_images.assert_not_called()
        assert _stages(recorded) == [ProgressStage.ERROR]

    @pytest.mark.asyncio
    async def test_oversized_files_are_skipped(self, mock_api, events, recorded, scheduler, tmp_path, make_images):
        make_images(tmp_path, ["small_1.jpg", "small_2.jpg"], size=10)
        make_images(tmp_path, ["huge.jpg"], size=500)
        uploader = BatchUploader(mock_api, UploadConfig(max_file_size_bytes=100), events, scheduler)

        result = await uploader.upload(tmp_path, "Field 12")

        sent = mock_api.push_images.call_args.args[1]
        assert sorted(p.name for p in sent) == ["small_1.jpg", "small_2.jpg"]
        assert result.success
        assert result.total_files == 3
        assert result.total_uploaded == 2
        assert result.total_skipped == 1

    @pytest.mark.asyncio
    async def test_every_file_oversized(self, mock_api, events, recorded, scheduler, tmp_path, make_images):
        make_images(tmp_path, ["huge.jpg"], size=500)
        uploader = BatchUploader(mock_api, UploadConfig(max_file_size_bytes=100), events, scheduler)

        result = await uploader.upload(tmp_path, "Field 12")

        assert not result.success
        assert "every file exceeds the size limit" in result.error
        mock_api.push_images.assert_not_called()
        assert recorded[-1].stage == ProgressStage.ERROR

    @pytest.mark.asyncio
    async def test_failed_batch_does_not_stop_the_job(
        self, mock_api, events, recorded, scheduler, tmp_path, make_images
    ):
        make_images(tmp_path, [f"IMG_{i:03d}.jpg" for i in range(5)])
        mock_api.push_images.side_effect = [
            _response("t1"),
            RemoteAPIError(500, "Internal error", details={"error": "Internal error"}),
            _response("t3"),
        ]
        uploader = BatchUploader(mock_api, UploadConfig(batch_size=2), events, scheduler)

        result = await uploader.upload(tmp_path, "Field 12")

        assert result.success
        assert result.successful_batches == 2
        assert result.failed_batches == 1
        assert result.total_uploaded == 3
        assert result.batch_results[1].error == "Internal error"
        assert result.batch_results[1].to_dict()["filesAttempted"] == 2
        assert result.task_id == "t3"
        assert ProgressStage.BATCH_ERROR in _stages(recorded)
        assert recorded[-1].stage == ProgressStage.COMPLETED

    @pytest.mark.asyncio
    async def test_all_batches_failed(self, mock_api, events, recorded, scheduler, tmp_path, make_images):
        make_images(tmp_path, [f"IMG_{i:03d}.jpg" for i in range(4)])
        mock_api.push_images.side_effect = TransportError("connection refused")
        uploader = BatchUploader(mock_api, UploadConfig(batch_size=2), events, scheduler)

        result = await uploader.upload(tmp_path, "Field 12")

        assert not result.success
        assert result.error == "All 2 batch(es) failed"
        assert result.details == "connection refused"
        assert recorded[-1].stage == ProgressStage.ERROR

    @pytest.mark.asyncio
    async def test_batch_retry(self, mock_api, events, recorded, scheduler, image_folder):
        mock_api.push_images.side_effect = [TransportError("timed out"), _response()]
        uploader = BatchUploader(mock_api, UploadConfig(batch_retries=1), events, scheduler)

        result = await uploader.upload(image_folder, "Field 12")

        assert result.success
        assert mock_api.push_images.await_count == 2
        assert ProgressStage.RETRY in _stages(recorded)
        assert scheduler.sleeps == [2.0]

    @pytest.mark.asyncio
    async def test_retry_keeps_batch_progress(self, mock_api, events, recorded, scheduler, image_folder):
        calls = []

        async def push(project_name, files, timeout=None, progress_callback=None, field_name="images"):
            calls.append(project_name)
            if len(calls) == 1:
                progress_callback(48, 48)
                raise TransportError("connection reset")
            progress_callback(12, 48)
            return _response()

        mock_api.push_images.side_effect = push
        uploader = BatchUploader(mock_api, UploadConfig(batch_retries=1), events, scheduler)

        result = await uploader.upload(image_folder, "Field 12")

        assert result.success
        percents = [e.percent for e in recorded]
        assert percents == sorted(percents)
        retry = next(e for e in recorded if e.stage == ProgressStage.RETRY)
        assert retry.percent == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_byte_progress_events(self, mock_api, events, recorded, scheduler, image_folder):
        async def push(project_name, files, timeout=None, progress_callback=None, field_name="images"):
            progress_callback(24, 48)
            progress_callback(48, 48)
            return _response()

        mock_api.push_images.side_effect = push
        uploader = BatchUploader(mock_api, UploadConfig(), events, scheduler)

        await uploader.upload(image_folder, "Field 12")

        byte_events = [e for e in recorded if e.stage == ProgressStage.UPLOADING and e.bytes_uploaded]
        assert [e.bytes_uploaded for e in byte_events] == [24, 48]
        assert byte_events[0].percent == pytest.approx(75.0)
        assert byte_events[-1].percent == pytest.approx(100.0)
        stages = _stages(recorded)
        assert stages.index(ProgressStage.BATCH_COMPLETED) > recorded.index(byte_events[-1])

    @pytest.mark.asyncio
    async def test_cancellation_between_batches(self, mock_api, events, recorded, scheduler, tmp_path, make_images):
        make_images(tmp_path, [f"IMG_{i:03d}.jpg" for i in range(4)])
        token = CancellationToken()

        def stop_after_first_batch(event):
            if event.stage == ProgressStage.BATCH_COMPLETED:
                token.cancel("Stopped by user")

        events.on(UPLOAD_PROGRESS, stop_after_first_batch)
        uploader = BatchUploader(mock_api, UploadConfig(batch_size=2), events, scheduler)

        result = await uploader.upload(tmp_path, "Field 12", cancel_token=token)

        assert not result.success
        assert result.error == "Stopped by user"
        assert result.successful_batches == 1
        mock_api.push_images.assert_awaited_once()
        assert _stages(recorded)[-2:] == [ProgressStage.CANCELLED, ProgressStage.ERROR]
        assert recorded[-1].error == "Stopped by user"

    @pytest.mark.asyncio
    async def test_validation(self, mock_api, events, scheduler, tmp_path):
        uploader = BatchUploader(mock_api, UploadConfig(), events, scheduler)

        with pytest.raises(ValidationError, match="Project name"):
            await uploader.upload(tmp_path, "  ")
        with pytest.raises(ValidationError, match="No folder"):
            await uploader.upload(None, "Field 12")
        with pytest.raises(ValidationError, match="not a directory"):
            await uploader.upload(tmp_path / "missing", "Field 12")

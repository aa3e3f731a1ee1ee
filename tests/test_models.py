"""Tests for odm_uploader models."""
from pathlib import Path

import pytest

from odm_uploader.errors import RemoteProtocolError, ValidationError
from odm_uploader.models import (
    BatchResult,
    MiB,
    PollConfig,
    PollState,
    ProgressEvent,
    ProgressStage,
    PushImagesResponse,
    RemoteTask,
    RemoteTaskStatus,
    TaskProgress,
    UploadConfig,
    UploadJob,
    UploadResult,
)


class TestUploadConfig:
    def test_defaults(self):
        config = UploadConfig()
        assert config.batch_size == 1000
        assert config.max_file_size_bytes == 50 * MiB
        assert config.inter_batch_delay == 2.0
        assert config.request_timeout == 600.0
        assert config.form_field == "images"

    def test_rejects_zero_batch_size(self):
        with pytest.raises(ValidationError, match="batch_size"):
            UploadConfig(batch_size=0)

    def test_rejects_negative_delay(self):
        with pytest.raises(ValidationError):
            UploadConfig(inter_batch_delay_ms=-1)

    def test_poll_config_requires_one_poll(self):
        with pytest.raises(ValidationError):
            PollConfig(max_polls=0)


class TestUploadJob:
    def _job(self, count, batch_size):
        files = [Path(f"img_{i:04d}.jpg") for i in range(count)]
        return UploadJob(Path("."), "Field", files, batch_size, 50 * MiB)

    def test_total_batches_is_ceiling(self):
        assert self._job(2500, 1000).total_batches == 3
        assert self._job(1000, 1000).total_batches == 1
        assert self._job(0, 1000).total_batches == 0

    def test_batches_are_contiguous_and_ordered(self):
        job = self._job(5, 2)
        batches = job.batches()
        assert [b.index for b in batches] == [0, 1, 2]
        assert [len(b) for b in batches] == [2, 2, 1]
        assert [f for b in batches for f in b.files] == job.files


class TestRemotePayloads:
    def test_push_response_without_task_id(self):
        response = PushImagesResponse.from_payload({"project_id": 7})
        assert response.project_id == 7
        assert response.task_id is None

    def test_push_response_requires_project_id(self):
        with pytest.raises(RemoteProtocolError, match="project_id"):
            PushImagesResponse.from_payload({"task_id": "abc"})

    def test_push_response_rejects_non_object(self):
        with pytest.raises(RemoteProtocolError):
            PushImagesResponse.from_payload(["not", "an", "object"])

    def test_task_progress_parses_status(self):
        progress = TaskProgress.from_payload({"status": 20, "progress": 42.5, "stage": "Running ODM"})
        assert progress.status is RemoteTaskStatus.RUNNING
        assert progress.progress == 42.5
        assert not progress.completed
        assert not progress.failed

    def test_task_progress_unknown_status(self):
        with pytest.raises(RemoteProtocolError, match="Unknown task status"):
            TaskProgress.from_payload({"status": 99})

    def test_task_progress_error_flag_is_failure(self):
        progress = TaskProgress.from_payload({"has_error": True, "last_error": "disk full"})
        assert progress.failed
        assert progress.last_error == "disk full"

    def test_remote_task_status_name(self):
        assert RemoteTask.from_payload({"id": "t1", "status": 40}).status_name == "COMPLETED"
        assert RemoteTask(id="t2", status=77).status_name == "UNKNOWN"


class TestResults:
    def test_upload_result_to_dict(self):
        response = PushImagesResponse(project_id=3, task_id="t9", raw={"project_id": 3, "task_id": "t9"})
        result = UploadResult(
            success=True,
            total_files=3,
            total_uploaded=2,
            total_skipped=1,
            total_batches=1,
            successful_batches=1,
            batch_results=[BatchResult.ok(0, 2, response, files_skipped=1)],
        )
        data = result.to_dict()
        assert data["totalFiles"] == 3
        assert data["totalUploaded"] == 2
        assert data["totalSkipped"] == 1
        assert data["results"][0] == {"batchIndex": 0, "success": True, "filesUploaded": 2,
                                      "data": {"project_id": 3, "task_id": "t9"}}
        assert "error" not in data

    def test_identifiers_come_from_last_successful_batch(self):
        first = PushImagesResponse(project_id=3, task_id="t1")
        result = UploadResult(
            success=True,
            batch_results=[BatchResult.ok(0, 1, first), BatchResult.fail(1, 1, "boom")],
        )
        assert result.task_id == "t1"
        assert result.project_id == 3

    def test_failure_builder(self):
        result = UploadResult.failure("No JPG images found in folder")
        assert not result.success
        assert result.to_dict()["error"] == "No JPG images found in folder"


class TestProgressEvent:
    def test_percent_is_clamped(self):
        assert ProgressEvent(ProgressStage.RUNNING, 140, "x").percent == 100.0
        assert ProgressEvent(ProgressStage.RUNNING, -3, "x").percent == 0.0

    def test_terminal_stages(self):
        assert ProgressEvent(ProgressStage.TIMEOUT, 95, "x").is_terminal
        assert not ProgressEvent(ProgressStage.RETRY, 20, "x").is_terminal

    def test_to_dict_drops_empty_fields(self):
        event = ProgressEvent(ProgressStage.QUEUED, 15, "queued", task_id="t1", state=PollState.QUEUED)
        assert event.to_dict() == {
            "stage": "queued",
            "percent": 15.0,
            "message": "queued",
            "task_id": "t1",
            "state": "queued",
        }

"""Orchestrator package - coordinates upload, polling and commit workflows."""
from .batch_upload import BatchUploader
from .commit import CommitService
from .core import ProcessingCoordinator
from .task_poller import TaskPoller

__all__ = ["ProcessingCoordinator", "BatchUploader", "TaskPoller", "CommitService"]

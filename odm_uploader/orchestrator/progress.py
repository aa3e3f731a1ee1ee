"""Normalization of remote task status into displayed progress."""
from typing import Optional

from ..models import PollConfig, TaskProgress

INITIALIZING_RANGE = (5.0, 15.0)
QUEUED_RANGE = (15.0, 25.0)
RUNNING_RANGE = (25.0, 90.0)
COMPLETED_PERCENT = 100.0
TIMEOUT_RUNNING_PERCENT = 95.0
TIMEOUT_IDLE_PERCENT = 50.0

# Elapsed wait after which the initializing band is full.
INITIALIZING_WINDOW_S = 600.0

# Weights of the sub-phases when the node reports no overall progress.
SUB_PROGRESS_WEIGHTS = (0.1, 0.1, 0.8)  # upload, resize, running


def _fraction(value: Optional[float]) -> Optional[float]:
    """Sub-progress arrives as 0..1 or 0..100 depending on the node."""
    if value is None:
        return None
    if value > 1.0:
        value = value / 100.0
    return max(0.0, min(1.0, value))


def remote_completion(progress: TaskProgress) -> float:
    """Completion reported by the node, 0..100."""
    if progress.progress is not None:
        return max(0.0, min(100.0, progress.progress))
    phases = (progress.upload_progress, progress.resize_progress, progress.running_progress)
    total = sum((_fraction(value) or 0.0) * weight for value, weight in zip(phases, SUB_PROGRESS_WEIGHTS))
    return total * 100.0


def running_percent(progress: TaskProgress, previous: float = 0.0) -> float:
    """Map remote completion into the running band without ever regressing."""
    low, high = RUNNING_RANGE
    computed = low + (high - low) * remote_completion(progress) / 100.0
    return max(low, previous, computed)


def queued_percent(queued_polls: int, previous: float = 0.0) -> float:
    low, high = QUEUED_RANGE
    return max(previous, min(high, low + max(0, queued_polls - 1)))


def initializing_percent(elapsed_s: float, previous: float = 0.0) -> float:
    low, high = INITIALIZING_RANGE
    share = min(1.0, max(0.0, elapsed_s) / INITIALIZING_WINDOW_S)
    return max(previous, low + (high - low) * share)


def timeout_percent(seen_running: bool) -> float:
    return TIMEOUT_RUNNING_PERCENT if seen_running else TIMEOUT_IDLE_PERCENT


def stage_label(progress: TaskProgress) -> str:
    if progress.stage:
        return progress.stage
    upload = _fraction(progress.upload_progress)
    if upload is not None and upload < 1.0:
        return "Uploading images to processing node"
    resize = _fraction(progress.resize_progress)
    if resize is not None and resize < 1.0:
        return "Resizing images"
    return "Processing images"


def waiting_message(elapsed_s: float) -> str:
    """Cosmetic tiers for a task the node has not registered yet."""
    if elapsed_s < 60:
        return "Initializing task on the processing node..."
    if elapsed_s < 300:
        return "Task is being set up, images are still being ingested..."
    return "Still waiting for the processing node; large datasets can take a while..."


def poll_interval(config: PollConfig, elapsed_s: float, consecutive_errors: int = 0) -> float:
    """
    Seconds until the next poll.

    Staged schedule: base interval, doubled after `slow_after_s`, tripled
    after `slower_after_s`. Consecutive transient errors double it again
    each time, capped at `max_retry_interval_ms`.
    """
    interval = config.interval_ms / 1000.0
    if elapsed_s >= config.slower_after_s:
        interval *= 3
    elif elapsed_s >= config.slow_after_s:
        interval *= 2
    if consecutive_errors > 0:
        cap = max(interval, config.max_retry_interval_ms / 1000.0)
        interval = min(interval * (2 ** consecutive_errors), cap)
    return interval

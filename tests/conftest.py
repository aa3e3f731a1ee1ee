"""Shared fixtures for odm_uploader tests."""
from pathlib import Path
from typing import List

import pytest

from odm_uploader.utils.scheduling import check_cancelled


class RecordingScheduler:
    """Scheduler that never waits, only records requested delays."""

    def __init__(self):
        self.sleeps: List[float] = []

    async def sleep(self, seconds, cancel_token=None):
        check_cancelled(cancel_token)
        self.sleeps.append(seconds)


def write_images(folder: Path, names, size: int = 16) -> List[Path]:
    folder.mkdir(parents=True, exist_ok=True)
    paths = []
    for name in names:
        path = folder / name
        path.write_bytes(b"\xff" * size)
        paths.append(path)
    return paths


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def image_folder(tmp_path):
    folder = tmp_path / "flight"
    write_images(folder, ["IMG_0001.jpg", "IMG_0002.JPG", "IMG_0003.jpeg"])
    return folder


@pytest.fixture
def make_images():
    return write_images

"""File collection utilities for folder uploads."""
from pathlib import Path
from typing import Iterable, List

DEFAULT_EXTENSIONS = (".jpg", ".jpeg")


class FileCollector:
    """Collects images from a folder."""

    @staticmethod
    def collect_images(folder: Path, extensions: Iterable[str] = DEFAULT_EXTENSIONS) -> List[Path]:
        """
        Collect eligible images directly inside a folder.

        Not recursive. Extensions match case-insensitively and the
        filesystem enumeration order is kept as-is.

        Args:
            folder: Folder to scan
            extensions: Accepted suffixes, e.g. (".jpg", ".jpeg")

        Returns:
            List of image paths

        Raises:
            OSError: If the folder cannot be enumerated
        """
        accepted = {ext.lower() for ext in extensions}
        return [
            item
            for item in Path(folder).iterdir()
            if item.suffix.lower() in accepted and item.is_file()
        ]
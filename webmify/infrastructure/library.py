import logging
from datetime import datetime
from pathlib import Path
from typing import List
from webmify.domain.models import ConvertedVideo
from webmify.infrastructure.ledger import SizeLedger

VIDEO_EXTENSIONS = (".webm", ".mp4", ".mkv")
OUTPUT_SUFFIX = "_webmify"

logger = logging.getLogger(__name__)

def format_size(size: int) -> str:
    """Human-readable size using 1024-based units, e.g. '1.5 MB'."""
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    group = 0
    while value >= 1024 and group < len(units) - 1:
        value /= 1024
        group += 1
    return f"{value:.1f} {units[group]}"


class OutputLibrary:
    """Converted files in the output directory, with their original sizes from the ledger."""

    def __init__(self, output_dir: Path, ledger: SizeLedger):
        self.output_dir = Path(output_dir).expanduser().resolve()
        self.ledger = ledger

    def default_output_path(self, input_path: Path) -> Path:
        return self.output_dir / f"{Path(input_path).stem}{OUTPUT_SUFFIX}.webm"

    def list(self) -> List[ConvertedVideo]:
        """Newest first. Empty files are skipped; unknown originals fall back to the current size."""
        if not self.output_dir.is_dir():
            return []

        videos = []
        for path in self.output_dir.iterdir():
            if not path.is_file() or path.suffix.lower() not in VIDEO_EXTENSIONS:
                continue
            try:
                stat = path.stat()
            except OSError as e:
                logger.warning(f"Cannot read {path}: {e}")
                continue
            if stat.st_size == 0:
                logger.debug(f"Skipping zero-length file: {path}")
                continue
            original = self.ledger.get(path)
            videos.append(ConvertedVideo(
                path=path,
                size_bytes=stat.st_size,
                original_size_bytes=original if original is not None else stat.st_size,
                modified_at=datetime.fromtimestamp(stat.st_mtime),
            ))

        videos.sort(key=lambda v: v.modified_at, reverse=True)
        return videos

    def delete(self, path: Path) -> bool:
        """Deletes a converted file and forgets its original size."""
        path = Path(path)
        try:
            path.unlink()
        except OSError as e:
            logger.error(f"Failed to delete {path}: {e}")
            return False
        if self.ledger.remove(path):
            self.ledger.save()
        logger.info(f"Deleted {path}")
        return True

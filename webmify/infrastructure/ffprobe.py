import subprocess
import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional
from webmify.domain.models import VideoMetadata

logger = logging.getLogger(__name__)

def parse_frame_rate(value: Optional[str]) -> Optional[float]:
    """Parses '30000/1001' or '29.97'. Returns None for missing, zero or absurd rates."""
    if not value:
        return None
    try:
        if "/" in value:
            num, den = map(float, value.split("/"))
            if den == 0:
                return None
            rate = num / den
        else:
            rate = float(value)
    except ValueError:
        return None
    if rate <= 0 or rate > 1000:
        return None
    return rate

def _parse_seconds(value: Any) -> Optional[float]:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


class FFprobeAdapter:
    """Wrapper around ffprobe to extract stream information."""

    def __init__(self, ffprobe_path: str = "ffprobe"):
        self.ffprobe_path = ffprobe_path

    def _command(self, file_path: Path):
        return [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(file_path)
        ]

    def get_stream_info(self, file_path: Path) -> Dict[str, Any]:
        """Executes ffprobe and parses JSON output."""
        result = subprocess.run(self._command(file_path), capture_output=True, encoding="utf-8", errors="replace")
        if result.returncode != 0:
            raise RuntimeError(f"ffprobe failed for {file_path}: {result.stderr}")

        data = json.loads(result.stdout)

        video_stream = next((s for s in data.get("streams", []) if s.get("codec_type") == "video"), None)
        if not video_stream:
            raise ValueError(f"No video stream found in {file_path}")

        # avg_frame_rate first; r_frame_rate is often the timebase
        fps = parse_frame_rate(video_stream.get("avg_frame_rate")) or parse_frame_rate(video_stream.get("r_frame_rate")) or 0.0

        return {
            "width": int(video_stream.get("width", 0)),
            "height": int(video_stream.get("height", 0)),
            "codec": video_stream.get("codec_name", "unknown"),
            "fps": round(fps, 3),
            "duration": float(data.get("format", {}).get("duration", 0.0)),
        }

    def probe(self, file_path: Path) -> Optional[VideoMetadata]:
        """
        Returns approximate timing metadata, or None if the file can't be probed.

        Failure is not fatal for a conversion: callers fall back to size/time
        based progress.
        """
        try:
            with subprocess.Popen(
                self._command(file_path),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace"
            ) as process:
                stdout, stderr = process.communicate()
                returncode = process.returncode
        except OSError as e:
            logger.warning(f"ffprobe could not be started for {file_path}: {e}")
            return None

        if returncode != 0:
            logger.warning(f"ffprobe failed for {file_path} (code {returncode}): {(stderr or '').strip()[:200]}")
            return None

        try:
            data = json.loads(stdout or "{}")
        except json.JSONDecodeError as e:
            logger.warning(f"ffprobe returned invalid JSON for {file_path}: {e}")
            return None

        streams = data.get("streams") or []
        video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
        if video_stream is None:
            logger.warning(f"No video stream found in {file_path}")
            return None

        frame_rate = parse_frame_rate(video_stream.get("avg_frame_rate")) or parse_frame_rate(video_stream.get("r_frame_rate"))
        seconds = _parse_seconds((data.get("format") or {}).get("duration")) or _parse_seconds(video_stream.get("duration"))
        duration_ms = int(round(seconds * 1000)) if seconds else 0

        metadata = VideoMetadata.from_timing(duration_ms, frame_rate)
        logger.debug(
            f"Probed {file_path.name}: frames={metadata.frame_count}, "
            f"duration={metadata.duration_ms}ms, fps={metadata.frame_rate}"
        )
        return metadata

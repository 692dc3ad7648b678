"""
Best-effort percentage estimation from ffmpeg telemetry.

ffmpeg's reports are irregular: they come in bursts, some fields are
`N/A` for long stretches, and the frame counter is only meaningful when the
input's frame count could be probed. The estimator picks the most reliable
strategy the current sample supports:

1. frames encoded / frames expected   (capped at 99)
2. bytes written / input size         (capped at 95)
3. bytes written / bitrate estimate   (capped at 95)
4. seconds since the job started      (capped at 95)

Only the terminal event may report completion, so no strategy reaches 100.
Estimation never raises: any error falls back to strategy 4.
"""
import logging
import time
from typing import Callable, Optional
from webmify.domain.models import ProgressReport, ProgressSample, UNKNOWN_FRAMES

FRAME_CEILING = 99
ESTIMATE_CEILING = 95

logger = logging.getLogger(__name__)

def _clamp(value: float, low: int, high: int) -> int:
    return int(max(low, min(high, value)))

def frame_percent(frame_number: int, total_frames: int) -> int:
    return _clamp(frame_number * 100 // total_frames, 0, FRAME_CEILING)

def byte_percent(processed_bytes: int, input_size_bytes: int) -> int:
    return _clamp(processed_bytes * 100 // input_size_bytes, 0, ESTIMATE_CEILING)

def bitrate_percent(processed_bytes: int, bitrate_kbps: float, elapsed_ms: int) -> int:
    estimated_total = bitrate_kbps * 1024 * elapsed_ms / 8
    return _clamp(processed_bytes * 100 / estimated_total, 0, ESTIMATE_CEILING)

def elapsed_percent(seconds_since_start: float) -> int:
    return _clamp(int(seconds_since_start), 0, ESTIMATE_CEILING)

def format_bytes(size: int) -> str:
    return f"{size / (1024 * 1024):.1f} MB"


class ProgressEstimator:
    """Throttled percentage estimate for a single job."""

    def __init__(self, throttle_ms: int = 200, clock: Callable[[], float] = time.monotonic):
        self.throttle_ms = throttle_ms
        self.clock = clock
        self.last_sample: Optional[ProgressSample] = None
        self.description = ""
        self._last_emit: Optional[float] = None

    def on_sample(
        self,
        sample: Optional[ProgressSample],
        total_frames: int,
        input_size_bytes: int,
        job_started_at: float
    ) -> Optional[ProgressReport]:
        """
        Feeds one telemetry sample (or None for a time-based tick).

        Returns a report when one is due, None when the sample falls inside
        the throttle window. Samples that are not delivered still replace the
        last seen sample and the description. A tick reports the elapsed-time
        percentage together with the last seen frame number.
        """
        now = self.clock()
        if sample is not None:
            self.last_sample = sample
            self.description = self.describe(sample, total_frames)
            logger.debug(f"Telemetry: {self.description}")

        if self._last_emit is not None and (now - self._last_emit) * 1000 < self.throttle_ms:
            return None
        self._last_emit = now

        # Ticks carry no telemetry: time-based percent, last known frame counter
        current = self.last_sample
        try:
            percent = self.estimate(sample, total_frames, input_size_bytes, now - job_started_at)
        except Exception:
            logger.exception("Progress estimation failed, using elapsed time")
            percent = elapsed_percent(now - job_started_at)

        return ProgressReport(
            percent=percent,
            frame_number=current.frame_number if current is not None else UNKNOWN_FRAMES,
            total_frames=total_frames,
            description=self.description,
        )

    @staticmethod
    def estimate(
        sample: Optional[ProgressSample],
        total_frames: int,
        input_size_bytes: int,
        seconds_since_start: float
    ) -> int:
        if sample is None:
            return elapsed_percent(seconds_since_start)
        if total_frames > 0:
            return frame_percent(sample.frame_number, total_frames)
        if sample.processed_bytes > 0 and input_size_bytes > 0:
            return byte_percent(sample.processed_bytes, input_size_bytes)
        if sample.bitrate_kbps > 0 and sample.elapsed_ms > 0:
            return bitrate_percent(sample.processed_bytes, sample.bitrate_kbps, sample.elapsed_ms)
        return elapsed_percent(seconds_since_start)

    @staticmethod
    def describe(sample: ProgressSample, total_frames: int = UNKNOWN_FRAMES) -> str:
        frames = f"frame {sample.frame_number}/{total_frames}" if total_frames > 0 else f"frame {sample.frame_number}"
        return (
            f"{frames} · time {sample.elapsed_ms / 1000:.1f}s · {format_bytes(sample.processed_bytes)}"
            f" · {sample.bitrate_kbps:.1f} kbit/s · {sample.speed:.2f}x"
        )

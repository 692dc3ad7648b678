import math
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

DEFAULT_FRAME_RATE = 30.0
UNKNOWN_FRAMES = -1

class JobState(str, Enum):
    IDLE = "IDLE"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)

class VideoMetadata(BaseModel):
    """Approximate timing information for an input file."""
    model_config = ConfigDict(frozen=True)

    frame_count: int = UNKNOWN_FRAMES
    duration_ms: int = 0
    frame_rate: float = DEFAULT_FRAME_RATE

    @classmethod
    def from_timing(cls, duration_ms: int, frame_rate: Optional[float]) -> "VideoMetadata":
        """Derives the frame count; zero frames means there is nothing to count against."""
        if not frame_rate or frame_rate <= 0:
            frame_rate = DEFAULT_FRAME_RATE
        duration_ms = max(0, int(duration_ms))
        frame_count = math.floor(duration_ms * frame_rate / 1000)
        return cls(
            frame_count=frame_count if frame_count > 0 else UNKNOWN_FRAMES,
            duration_ms=duration_ms,
            frame_rate=frame_rate,
        )

class ProgressSample(BaseModel):
    """One telemetry reading from the encoder. Missing values stay at zero."""
    elapsed_ms: int = 0
    processed_bytes: int = 0
    bitrate_kbps: float = 0.0
    frame_number: int = 0
    speed: float = 0.0

class ProgressReport(BaseModel):
    percent: int
    frame_number: int = UNKNOWN_FRAMES
    total_frames: int = UNKNOWN_FRAMES
    description: str = ""

class EncoderStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    CANCELLED = "CANCELLED"

class EncoderResult(BaseModel):
    status: EncoderStatus
    return_code: Optional[int] = None
    diagnostic: str = ""

class LedgerEntry(BaseModel):
    output_path: str
    original_size_bytes: int = Field(ge=0)

class ConversionJob(BaseModel):
    input_path: Path
    output_path: Path
    state: JobState = JobState.IDLE
    started_at: datetime = Field(default_factory=datetime.now)
    total_frames: int = UNKNOWN_FRAMES
    last_frame_seen: int = 0
    original_size_bytes: int = 0
    error_message: Optional[str] = None

class ConvertedVideo(BaseModel):
    """A finished output file as shown in the library listing."""
    path: Path
    size_bytes: int
    original_size_bytes: int
    modified_at: datetime

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def compression_percent(self) -> float:
        """Size reduction relative to the original, negative if the file grew."""
        if self.original_size_bytes <= 0:
            return 0.0
        return 100.0 - (self.size_bytes * 100.0 / self.original_size_bytes)

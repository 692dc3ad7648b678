import re
from pathlib import Path
from typing import Optional
from pydantic import BaseModel, Field, field_validator

_BITRATE_RE = re.compile(r"^\d+(\.\d+)?[kKmM]?$")

class EncoderConfig(BaseModel):
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    video_bitrate: str = "3M"
    max_bitrate: str = "6M"
    min_bitrate: str = "2M"
    audio_bitrate: str = "96k"
    cpu_used: int = Field(default=4, ge=0, le=8)
    threads: Optional[int] = Field(default=None, ge=1, le=64)
    kill_grace_seconds: float = Field(default=5.0, gt=0)

    @field_validator('video_bitrate', 'max_bitrate', 'min_bitrate', 'audio_bitrate')
    @classmethod
    def validate_bitrate(cls, v: str) -> str:
        if not _BITRATE_RE.match(v):
            raise ValueError(f"Invalid bitrate {v!r}. Expected a number with optional k/M suffix.")
        return v

class ProgressConfig(BaseModel):
    throttle_ms: int = Field(default=200, ge=0)
    tick_interval_seconds: float = Field(default=1.0, gt=0)

class StorageConfig(BaseModel):
    output_dir: Path = Path("~/Movies/webmify")
    ledger_path: Optional[Path] = None

    @field_validator('output_dir', 'ledger_path')
    @classmethod
    def expand_user(cls, v: Optional[Path]) -> Optional[Path]:
        return v.expanduser() if v is not None else None

    @property
    def resolved_ledger_path(self) -> Path:
        return self.ledger_path or self.output_dir / ".webmify_ledger.yaml"

class AppConfig(BaseModel):
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    debug: bool = False

from pathlib import Path
from pydantic import BaseModel

class Event(BaseModel):
    """Base class for all domain events."""
    pass

class ConversionStarted(Event):
    original_size: int
    total_frames: int

class ProgressUpdated(Event):
    percent: int
    current_frame: int = -1
    total_frames: int = -1

class ConversionSucceeded(Event):
    output_path: Path
    original_size: int
    new_size: int

class ConversionFailed(Event):
    error_message: str

class ConversionCancelled(Event):
    pass

from typing import Protocol

class ConversionListener(Protocol):
    """
    Callbacks a presentation layer implements to follow a conversion.

    Per accepted job the order is: one on_start, any number of on_progress,
    then exactly one of on_success / on_failure / on_cancelled. All calls
    arrive on the same dispatcher thread.
    """

    def on_start(self, original_size: int, total_frames: int) -> None: ...

    def on_progress(self, percent: int, current_frame: int, total_frames: int) -> None: ...

    def on_success(self, output_path: str, original_size: int, new_size: int) -> None: ...

    def on_failure(self, message: str) -> None: ...

    def on_cancelled(self) -> None: ...

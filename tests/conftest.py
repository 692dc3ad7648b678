import threading
import pytest
from pathlib import Path
from webmify.config.models import ProgressConfig
from webmify.domain.exceptions import LaunchFailure
from webmify.domain.models import EncoderResult, EncoderStatus, ProgressSample, VideoMetadata
from webmify.infrastructure.ledger import SizeLedger
from webmify.pipeline.manager import ConversionJobManager


class FakeSession:
    def __init__(self):
        self.cancel_calls = 0

    def cancel(self):
        self.cancel_calls += 1


class FakeEncoder:
    """Stands in for FFmpegAdapter; the test decides when telemetry and completion happen."""

    def __init__(self, fail_launch: bool = False):
        self.fail_launch = fail_launch
        self.launches = []

    def launch(self, input_path, output_path, on_sample, on_complete):
        if self.fail_launch:
            raise LaunchFailure("ffmpeg: No such file or directory")
        session = FakeSession()
        self.launches.append({
            "input": input_path,
            "output": output_path,
            "on_sample": on_sample,
            "on_complete": on_complete,
            "session": session,
        })
        return session

    @property
    def last(self):
        return self.launches[-1]

    def emit(self, **fields):
        self.last["on_sample"](ProgressSample(**fields))

    def complete(self, status: EncoderStatus, output_bytes: int = None, diagnostic: str = "", launch=None):
        launch = launch or self.last
        if output_bytes is not None:
            Path(launch["output"]).write_bytes(b"\0" * output_bytes)
        launch["on_complete"](EncoderResult(status=status, diagnostic=diagnostic))


class FakeProbe:
    def __init__(self, metadata=None):
        self.metadata = metadata
        self.calls = []

    def probe(self, path):
        self.calls.append(path)
        return self.metadata


class RecordingListener:
    def __init__(self):
        self.events = []
        self.threads = set()
        self.terminal = threading.Event()

    def _record(self, *event):
        self.threads.add(threading.get_ident())
        self.events.append(event)

    def on_start(self, original_size, total_frames):
        self._record("start", original_size, total_frames)

    def on_progress(self, percent, current_frame, total_frames):
        self._record("progress", percent, current_frame, total_frames)

    def on_success(self, output_path, original_size, new_size):
        self._record("success", output_path, original_size, new_size)
        self.terminal.set()

    def on_failure(self, message):
        self._record("failure", message)
        self.terminal.set()

    def on_cancelled(self):
        self._record("cancelled")
        self.terminal.set()

    def names(self):
        return [e[0] for e in self.events]

    def of(self, name):
        return [e for e in self.events if e[0] == name]


def make_file(path: Path, size: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.truncate(size)
    return path


@pytest.fixture
def input_file(tmp_path):
    return make_file(tmp_path / "in.mp4", 1000)


@pytest.fixture
def ledger(tmp_path):
    return SizeLedger(tmp_path / "ledger.yaml")


@pytest.fixture
def encoder():
    return FakeEncoder()


@pytest.fixture
def probe():
    return FakeProbe(VideoMetadata.from_timing(10000, 30.0))


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def manager(ledger, probe, encoder, listener):
    manager = ConversionJobManager(
        ledger=ledger,
        probe=probe,
        encoder=encoder,
        progress_config=ProgressConfig(throttle_ms=0, tick_interval_seconds=3600)
    )
    manager.add_listener(listener)
    yield manager
    manager.close()


@pytest.fixture
def flush(manager):
    def _flush():
        assert manager.dispatcher.flush(timeout=2.0)
    return _flush


@pytest.fixture
def sized_file():
    """Factory creating a sparse file of the given size."""
    return make_file

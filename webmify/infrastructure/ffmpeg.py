import logging
import os
import subprocess
import threading
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Dict, IO, List, Optional
from webmify.config.models import EncoderConfig
from webmify.domain.exceptions import LaunchFailure
from webmify.domain.models import EncoderResult, EncoderStatus, ProgressSample

STDERR_TAIL_LINES = 20

SampleCallback = Callable[[ProgressSample], None]
CompletionCallback = Callable[[EncoderResult], None]

def default_thread_count(cpu_count: Optional[int] = None) -> int:
    """One core is left for the rest of the system; never fewer than 2 or more than 8 threads."""
    cores = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    return min(max(cores - 1, 2), 8)

def _to_int(value: Optional[str]) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0

def _to_float(value: Optional[str], suffix: str = "") -> float:
    if value is None:
        return 0.0
    value = value.strip()
    if suffix and value.endswith(suffix):
        value = value[:-len(suffix)]
    try:
        return float(value)
    except ValueError:
        return 0.0


class ProgressParser:
    """
    Turns `-progress pipe:1` output into samples.

    ffmpeg writes one `key=value` per line and closes each report with a
    `progress=continue` or `progress=end` line. Values can be `N/A`, which
    parse as zero.
    """

    def __init__(self):
        self._fields: Dict[str, str] = {}

    def feed(self, line: str) -> Optional[ProgressSample]:
        key, sep, value = line.strip().partition("=")
        if not sep:
            return None
        key = key.strip()
        value = value.strip()
        if key != "progress":
            self._fields[key] = value
            return None

        fields, self._fields = self._fields, {}
        return self.to_sample(fields)

    @staticmethod
    def to_sample(fields: Dict[str, str]) -> ProgressSample:
        # out_time_ms is in microseconds too, despite the name
        elapsed_us = _to_int(fields.get("out_time_us")) or _to_int(fields.get("out_time_ms"))
        return ProgressSample(
            elapsed_ms=max(0, elapsed_us // 1000),
            processed_bytes=max(0, _to_int(fields.get("total_size"))),
            bitrate_kbps=max(0.0, _to_float(fields.get("bitrate"), "kbits/s")),
            frame_number=max(0, _to_int(fields.get("frame"))),
            speed=max(0.0, _to_float(fields.get("speed"), "x")),
        )


class EncoderSession:
    """Handle on one running ffmpeg process."""

    def __init__(self, process: subprocess.Popen, kill_grace_seconds: float = 5.0):
        self.process = process
        self.kill_grace_seconds = kill_grace_seconds
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._cancelled = False
        self._finished = threading.Event()

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def cancel(self):
        """Asks ffmpeg to stop. Returns immediately; completion is still reported."""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
        if self.process.poll() is not None:
            return
        try:
            self.process.terminate()
        except OSError as e:
            self.logger.warning(f"Failed to terminate ffmpeg (pid {self.process.pid}): {e}")
            return
        killer = threading.Timer(self.kill_grace_seconds, self._kill_if_alive)
        killer.daemon = True
        killer.start()

    def _kill_if_alive(self):
        if self.process.poll() is None:
            self.logger.warning(f"ffmpeg (pid {self.process.pid}) ignored terminate, killing it")
            try:
                self.process.kill()
            except OSError:
                pass

    def _mark_finished(self):
        self._finished.set()


class FFmpegAdapter:
    """Wrapper around ffmpeg for WebM (VP9 + Opus) conversion."""

    def __init__(self, config: Optional[EncoderConfig] = None):
        self.config = config or EncoderConfig()
        self.logger = logging.getLogger(__name__)

    def build_command(self, input_path: Path, output_path: Path) -> List[str]:
        """Constructs the ffmpeg command line arguments."""
        config = self.config
        threads = config.threads or default_thread_count()
        return [
            config.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-loglevel", "error",
            "-y",  # Overwrite output files
            "-i", str(input_path),

            # Video
            "-c:v", "libvpx-vp9",
            "-deadline", "realtime",
            "-cpu-used", str(config.cpu_used),
            "-b:v", config.video_bitrate,
            "-maxrate", config.max_bitrate,
            "-minrate", config.min_bitrate,
            "-pix_fmt", "yuv420p",
            "-threads", str(threads),
            "-row-mt", "1",
            "-tile-columns", "2",
            "-auto-alt-ref", "1",
            "-lag-in-frames", "0",

            # Audio
            "-c:a", "libopus",
            "-b:a", config.audio_bitrate,
            "-vbr", "on",
            "-compression_level", "5",
            "-frame_duration", "20",
            "-application", "audio",

            # Container
            "-f", "webm",
            "-vsync", "cfr",

            # Machine-readable telemetry on stdout, human logs stay on stderr
            "-progress", "pipe:1",
            "-nostats",
            str(output_path),
        ]

    def launch(
        self,
        input_path: Path,
        output_path: Path,
        on_sample: SampleCallback,
        on_complete: CompletionCallback
    ) -> EncoderSession:
        """
        Starts ffmpeg and returns immediately.

        on_sample is called from a background thread for every telemetry
        report; on_complete is called exactly once from the same thread when
        the process has exited.
        """
        cmd = self.build_command(input_path, output_path)
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                bufsize=1
            )
        except (OSError, ValueError) as e:
            raise LaunchFailure(f"Could not start {self.config.ffmpeg_path}: {e}") from e

        session = EncoderSession(process, kill_grace_seconds=self.config.kill_grace_seconds)
        self.logger.info(f"FFMPEG_START: {input_path.name} -> {output_path.name} (pid {process.pid})")
        runner = threading.Thread(
            target=self._run,
            args=(session, on_sample, on_complete),
            name="webmify-ffmpeg",
            daemon=True
        )
        runner.start()
        return session

    def _drain(self, stream: IO[str], tail: Deque[str]):
        try:
            for line in stream:
                line = line.rstrip()
                if line:
                    tail.append(line)
        except (OSError, ValueError) as e:
            self.logger.warning(f"Stopped reading ffmpeg stderr: {e}")

    def _run(self, session: EncoderSession, on_sample: SampleCallback, on_complete: CompletionCallback):
        process = session.process
        tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        drain = threading.Thread(target=self._drain, args=(process.stderr, tail), daemon=True)
        drain.start()

        parser = ProgressParser()
        read_error: Optional[Exception] = None
        try:
            for line in process.stdout:
                sample = parser.feed(line)
                if sample is None:
                    continue
                try:
                    on_sample(sample)
                except Exception:
                    self.logger.exception("Progress callback failed")
        except Exception as e:
            read_error = e
            self.logger.error(f"Lost ffmpeg telemetry stream: {e}")
        finally:
            process.wait()
            drain.join(timeout=1.0)

        result = self._result(session, process.returncode, list(tail), read_error)
        self.logger.info(f"FFMPEG_END: status={result.status.value} code={process.returncode}")
        session._mark_finished()
        on_complete(result)

    @staticmethod
    def _result(session: EncoderSession, returncode: Optional[int], tail: List[str], read_error: Optional[Exception]) -> EncoderResult:
        if session.cancelled:
            return EncoderResult(status=EncoderStatus.CANCELLED, return_code=returncode)
        if returncode == 0 and read_error is None:
            return EncoderResult(status=EncoderStatus.SUCCESS, return_code=0)

        details = " | ".join(tail)
        if read_error is not None and not details:
            details = str(read_error)
        diagnostic = f"ffmpeg exited with code {returncode}"
        if details:
            diagnostic = f"{diagnostic}: {details}"
        return EncoderResult(status=EncoderStatus.FAILURE, return_code=returncode, diagnostic=diagnostic)

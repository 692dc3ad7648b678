import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional
from webmify.config.models import ProgressConfig
from webmify.domain.events import (
    Event, ConversionStarted, ProgressUpdated, ConversionSucceeded,
    ConversionFailed, ConversionCancelled
)
from webmify.domain.exceptions import (
    InputNotFound, AlreadyRunning, CleanupPending, OutputPrepFailure,
    EncodeFailure, LaunchFailure, PostprocessMissingOutput
)
from webmify.domain.listener import ConversionListener
from webmify.domain.models import (
    ConversionJob, EncoderResult, EncoderStatus, JobState, ProgressSample, UNKNOWN_FRAMES
)
from webmify.infrastructure.event_bus import EventBus, EventDispatcher, ListenerAdapter
from webmify.infrastructure.ffmpeg import EncoderSession, FFmpegAdapter
from webmify.infrastructure.ffprobe import FFprobeAdapter
from webmify.infrastructure.ledger import SizeLedger
from webmify.pipeline.progress import ProgressEstimator

DIAGNOSTIC_LIMIT = 200

logger = logging.getLogger(__name__)

def truncate(message: str, limit: int = DIAGNOSTIC_LIMIT) -> str:
    return message if len(message) <= limit else message[:limit]


class BusyFlag:
    """
    Test-and-set guard admitting one job at a time.

    The flag remembers which run set it, so a late completion of a cancelled
    run cannot clear the flag of the job that started after it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._owner: Optional[object] = None

    @property
    def is_set(self) -> bool:
        with self._lock:
            return self._owner is not None

    def try_acquire(self, owner: object) -> bool:
        with self._lock:
            if self._owner is not None:
                return False
            self._owner = owner
            return True

    def release(self, owner: object) -> bool:
        with self._lock:
            if self._owner is not owner:
                return False
            self._owner = None
            return True


class _JobRun:
    """Bookkeeping for one accepted start() call."""

    def __init__(self, job: ConversionJob, estimator: ProgressEstimator, started_clock: float):
        self.job = job
        self.estimator = estimator
        self.started_clock = started_clock
        self.session: Optional[EncoderSession] = None
        self.last_sample_at: Optional[float] = None
        self.cancel_requested = False
        self.terminal_sent = False
        self.stop_ticker = threading.Event()
        self.finished = threading.Event()


class ConversionJobManager:
    """
    Runs at most one WebM conversion at a time.

    start() validates the input, records the original size in the ledger,
    probes the input, spawns ffmpeg and returns. Everything after that
    happens on background threads; the listener learns about it through
    events delivered, in order, by a single dispatcher thread.
    """

    def __init__(
        self,
        ledger: SizeLedger,
        probe: Optional[FFprobeAdapter] = None,
        encoder: Optional[FFmpegAdapter] = None,
        dispatcher: Optional[EventDispatcher] = None,
        progress_config: Optional[ProgressConfig] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.ledger = ledger
        self.probe = probe or FFprobeAdapter()
        self.encoder = encoder or FFmpegAdapter()
        self.dispatcher = dispatcher or EventDispatcher(EventBus())
        self.progress_config = progress_config or ProgressConfig()
        self.clock = clock

        self._busy = BusyFlag()
        self._lock = threading.RLock()
        self._run: Optional[_JobRun] = None
        self._last_run: Optional[_JobRun] = None
        self._cleanup_pending: Dict[str, _JobRun] = {}

        self.dispatcher.start()

    def add_listener(self, listener: ConversionListener) -> ListenerAdapter:
        return ListenerAdapter(self.dispatcher.bus, listener)

    @property
    def state(self) -> JobState:
        with self._lock:
            return self._run.job.state if self._run is not None else JobState.IDLE

    @property
    def current_job(self) -> Optional[ConversionJob]:
        with self._lock:
            return self._run.job if self._run is not None else None

    @property
    def is_busy(self) -> bool:
        return self._busy.is_set

    def start(self, input_path, output_path) -> ConversionJob:
        """
        Accepts a conversion and returns once ffmpeg has been handed the job.

        Raises InputNotFound or AlreadyRunning without side effects. Failures
        after acceptance are reported through on_failure instead.
        """
        input_path = Path(input_path)
        output_path = Path(output_path)
        if not input_path.is_file():
            raise InputNotFound(f"Input file does not exist: {input_path}")

        job = ConversionJob(input_path=input_path, output_path=output_path)
        run = _JobRun(
            job=job,
            estimator=ProgressEstimator(throttle_ms=self.progress_config.throttle_ms, clock=self.clock),
            started_clock=self.clock()
        )

        if not self._busy.try_acquire(run):
            logger.warning(f"Conversion already in progress, ignoring {input_path.name}")
            raise AlreadyRunning("Conversion already in progress")

        with self._lock:
            pending = self._cleanup_pending.get(str(output_path))
            if pending is not None and not pending.finished.is_set():
                self._busy.release(run)
                logger.warning(f"Output {output_path} still being cleaned up after cancel")
                raise CleanupPending(f"Cancelled job still cleaning up {output_path}")

        try:
            original_size = input_path.stat().st_size
        except OSError as e:
            self._busy.release(run)
            raise InputNotFound(f"Input file is not readable: {input_path}: {e}") from e

        self.ledger.put(output_path, original_size)
        try:
            self.ledger.save()
        except OSError as e:
            logger.error(f"Could not persist ledger entry for {output_path}: {e}")

        metadata = None
        try:
            metadata = self.probe.probe(input_path)
        except Exception:
            logger.exception(f"Metadata probe crashed for {input_path}")
        total_frames = metadata.frame_count if metadata is not None else UNKNOWN_FRAMES
        if metadata is None:
            logger.info(f"No metadata for {input_path.name}, frame-based progress disabled")

        with self._lock:
            job.original_size_bytes = original_size
            job.total_frames = total_frames
            job.state = JobState.STARTING
            self._run = run
            self._last_run = run
            self._post(ConversionStarted(original_size=original_size, total_frames=total_frames))
        logger.info(
            f"JOB_START: {input_path} -> {output_path} "
            f"(size={original_size}, frames={total_frames})"
        )

        try:
            self._prepare_output(output_path)
        except OutputPrepFailure as e:
            logger.error(str(e))
            self._finish(run, JobState.FAILED, ConversionFailed(error_message=truncate(str(e))))
            return job

        try:
            with self._lock:
                job.state = JobState.RUNNING
                run.session = self.encoder.launch(
                    input_path,
                    output_path,
                    on_sample=lambda sample: self._on_sample(run, sample),
                    on_complete=lambda result: self._on_complete(run, result)
                )
        except LaunchFailure as e:
            logger.error(f"Conversion error: {e}")
            self._finish(run, JobState.FAILED, ConversionFailed(error_message=truncate(f"Conversion error: {e}")))
            return job

        ticker = threading.Thread(target=self._tick, args=(run,), name="webmify-ticker", daemon=True)
        ticker.start()
        return job

    def cancel(self) -> bool:
        """
        Signals the running encoder to stop and frees the slot immediately.

        Partial output is removed later, when the encoder reports back.
        Returns False (and does nothing) if no job is running.
        """
        with self._lock:
            run = self._run
            if run is None or run.job.state != JobState.RUNNING or run.session is None:
                return False
            run.cancel_requested = True
            self._run = None
            self._cleanup_pending[str(run.job.output_path)] = run

        logger.info(f"JOB_CANCEL: {run.job.output_path}")
        try:
            run.session.cancel()
        except Exception:
            logger.exception("Error cancelling conversion")
        finally:
            self._busy.release(run)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Blocks until the latest job has finished and its events were delivered."""
        with self._lock:
            run = self._last_run
        if run is None:
            return True
        if not run.finished.wait(timeout):
            return False
        return self.dispatcher.flush(timeout)

    def close(self):
        self.cancel()
        self.dispatcher.stop()

    def _post(self, event: Event):
        self.dispatcher.post(event)

    @staticmethod
    def _prepare_output(output_path: Path):
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OutputPrepFailure(f"Failed to create output directory {output_path.parent}: {e}") from e
        if output_path.exists() or output_path.is_symlink():
            try:
                output_path.unlink()
            except OSError as e:
                raise OutputPrepFailure(f"Failed to prepare output file {output_path}: {e}") from e

    def _deliver_progress(self, run: _JobRun, sample: Optional[ProgressSample]):
        report = run.estimator.on_sample(
            sample,
            run.job.total_frames,
            run.job.original_size_bytes,
            run.started_clock
        )
        if report is None:
            return
        self._post(ProgressUpdated(
            percent=report.percent,
            current_frame=report.frame_number,
            total_frames=report.total_frames
        ))

    def _on_sample(self, run: _JobRun, sample: ProgressSample):
        with self._lock:
            if run.terminal_sent or run.cancel_requested:
                return
            run.last_sample_at = self.clock()
            run.job.last_frame_seen = max(run.job.last_frame_seen, sample.frame_number)
            self._deliver_progress(run, sample)

    def _tick(self, run: _JobRun):
        """Keeps progress moving while ffmpeg is silent."""
        interval = self.progress_config.tick_interval_seconds
        while not run.stop_ticker.wait(interval):
            with self._lock:
                if run.terminal_sent or run.cancel_requested:
                    return
                if run.last_sample_at is not None and self.clock() - run.last_sample_at < interval:
                    continue
                self._deliver_progress(run, None)

    def _on_complete(self, run: _JobRun, result: EncoderResult):
        self._busy.release(run)
        output_path = run.job.output_path
        if run.terminal_sent:
            logger.warning(f"Ignoring repeated completion for {output_path.name}")
            return
        try:
            if result.status == EncoderStatus.CANCELLED:
                logger.info(f"JOB_END: {output_path.name} status=cancelled")
                self._delete_partial(output_path)
                self._finish(run, JobState.CANCELLED, ConversionCancelled())
            elif result.status == EncoderStatus.SUCCESS:
                if not output_path.is_file():
                    error = PostprocessMissingOutput(f"Encoder reported success but {output_path} is missing")
                    logger.error(str(error))
                    self._finish(run, JobState.FAILED, ConversionFailed(error_message=truncate(str(error))))
                    return
                new_size = output_path.stat().st_size
                logger.info(
                    f"JOB_END: {output_path.name} status=completed "
                    f"original={run.job.original_size_bytes} new={new_size}"
                )
                self._finish(run, JobState.SUCCEEDED, ConversionSucceeded(
                    output_path=output_path,
                    original_size=run.job.original_size_bytes,
                    new_size=new_size
                ))
            else:
                error = EncodeFailure(result.diagnostic or "Unknown error")
                logger.error(f"JOB_END: {output_path.name} status=failed: {error}")
                self._delete_partial(output_path)
                self._finish(run, JobState.FAILED, ConversionFailed(
                    error_message=f"Conversion failed: {truncate(str(error))}"
                ))
        except Exception as e:
            logger.exception(f"Error finishing conversion of {output_path}")
            self._finish(run, JobState.FAILED, ConversionFailed(error_message=truncate(f"Conversion error: {e}")))

    @staticmethod
    def _delete_partial(output_path: Path):
        try:
            output_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not delete partial output {output_path}: {e}")

    def _finish(self, run: _JobRun, state: JobState, event: Event):
        """Records the terminal state and queues the one terminal event."""
        with self._lock:
            if run.terminal_sent:
                return
            run.terminal_sent = True
            run.stop_ticker.set()
            run.job.state = state
            if isinstance(event, ConversionFailed):
                run.job.error_message = event.error_message
            self._post(event)
            if self._run is run:
                self._run = None
            if self._cleanup_pending.get(str(run.job.output_path)) is run:
                del self._cleanup_pending[str(run.job.output_path)]
        self._busy.release(run)
        run.finished.set()

"""Unit tests for the conversion state machine."""
import pytest
from unittest.mock import MagicMock
from webmify.domain.exceptions import InputNotFound, AlreadyRunning, CleanupPending
from webmify.domain.models import EncoderStatus, JobState, ProgressSample
from webmify.pipeline.manager import BusyFlag, truncate


class TestBusyFlag:
    def test_only_one_owner(self):
        flag = BusyFlag()
        first, second = object(), object()
        assert flag.try_acquire(first)
        assert not flag.try_acquire(second)
        assert flag.is_set

    def test_release_by_other_owner_is_ignored(self):
        flag = BusyFlag()
        first, second = object(), object()
        flag.try_acquire(first)
        assert not flag.release(second)
        assert flag.is_set
        assert flag.release(first)
        assert not flag.is_set


class TestStart:
    def test_missing_input_rejected(self, manager, listener, tmp_path, flush):
        with pytest.raises(InputNotFound):
            manager.start(tmp_path / "missing.mp4", tmp_path / "out.webm")
        flush()
        assert listener.events == []
        assert manager.state == JobState.IDLE
        assert not manager.is_busy

    def test_directory_input_rejected(self, manager, tmp_path):
        with pytest.raises(InputNotFound):
            manager.start(tmp_path, tmp_path / "out.webm")

    def test_start_records_ledger_and_emits_start(self, manager, ledger, listener, input_file, tmp_path, flush):
        out = tmp_path / "out" / "out.webm"
        job = manager.start(input_file, out)
        flush()

        assert job.state == JobState.RUNNING
        assert manager.state == JobState.RUNNING
        assert ledger.get(out) == 1000
        assert listener.events == [("start", 1000, 300)]
        assert out.parent.is_dir()

    def test_ledger_is_persisted_at_start(self, manager, ledger, input_file, tmp_path):
        out = tmp_path / "out.webm"
        manager.start(input_file, out)
        assert ledger.path.exists()

    def test_stale_output_removed(self, manager, input_file, tmp_path):
        out = tmp_path / "out.webm"
        out.write_bytes(b"old")
        manager.start(input_file, out)
        assert not out.exists()

    def test_second_start_rejected_while_running(self, manager, encoder, listener, input_file, tmp_path, flush):
        out = tmp_path / "out.webm"
        manager.start(input_file, out)

        with pytest.raises(AlreadyRunning):
            manager.start(input_file, tmp_path / "other.webm")

        assert len(encoder.launches) == 1
        assert manager.state == JobState.RUNNING

        encoder.complete(EncoderStatus.SUCCESS, output_bytes=10)
        flush()
        assert listener.names() == ["start", "success"]

    def test_probe_failure_disables_frames(self, manager, probe, listener, input_file, tmp_path, flush):
        probe.metadata = None
        manager.start(input_file, tmp_path / "out.webm")
        flush()
        assert listener.events == [("start", 1000, -1)]

    def test_probe_crash_is_not_fatal(self, manager, probe, encoder, listener, input_file, tmp_path, flush):
        probe.probe = MagicMock(side_effect=RuntimeError("boom"))
        manager.start(input_file, tmp_path / "out.webm")
        flush()
        assert listener.events == [("start", 1000, -1)]
        assert len(encoder.launches) == 1

    def test_output_prep_failure(self, manager, encoder, listener, input_file, tmp_path, flush):
        out = tmp_path / "taken"
        out.mkdir()  # a directory can't be unlinked like a stale file
        (out / "child").write_text("x")

        manager.start(input_file, out)
        flush()

        assert encoder.launches == []
        assert listener.names() == ["start", "failure"]
        assert "Failed to prepare output file" in listener.of("failure")[0][1]
        assert not manager.is_busy
        assert manager.state == JobState.IDLE

    def test_launch_failure(self, manager, encoder, listener, input_file, tmp_path, flush):
        encoder.fail_launch = True
        job = manager.start(input_file, tmp_path / "out.webm")
        flush()

        assert job.state == JobState.FAILED
        assert listener.names() == ["start", "failure"]
        assert "No such file" in listener.of("failure")[0][1]
        assert not manager.is_busy
        assert manager.state == JobState.IDLE


class TestCompletion:
    def test_success(self, manager, encoder, listener, input_file, tmp_path, flush):
        out = tmp_path / "out.webm"
        job = manager.start(input_file, out)
        assert manager.current_job is job
        assert not job.state.is_terminal
        encoder.complete(EncoderStatus.SUCCESS, output_bytes=400)
        flush()

        assert listener.events[-1] == ("success", str(out), 1000, 400)
        assert manager.state == JobState.IDLE
        assert manager.current_job is None
        assert job.state == JobState.SUCCEEDED
        assert job.state.is_terminal
        assert not manager.is_busy

    def test_success_reports_size_recorded_at_start(self, manager, encoder, listener, input_file, tmp_path, flush):
        out = tmp_path / "out.webm"
        manager.start(input_file, out)
        input_file.unlink()  # transient inputs may vanish mid-run
        encoder.complete(EncoderStatus.SUCCESS, output_bytes=10)
        flush()
        assert listener.events[-1] == ("success", str(out), 1000, 10)

    def test_success_without_output_is_failure(self, manager, encoder, listener, input_file, tmp_path, flush):
        manager.start(input_file, tmp_path / "out.webm")
        encoder.complete(EncoderStatus.SUCCESS)
        flush()

        assert listener.names() == ["start", "failure"]
        assert "missing" in listener.of("failure")[0][1]
        assert listener.of("success") == []

    def test_failure_truncates_diagnostic_and_removes_partial(self, manager, encoder, listener, input_file, tmp_path, flush):
        out = tmp_path / "out.webm"
        manager.start(input_file, out)
        encoder.complete(EncoderStatus.FAILURE, output_bytes=50, diagnostic="x" * 1000)
        flush()

        message = listener.of("failure")[0][1]
        assert message == "Conversion failed: " + "x" * 200
        assert not out.exists()
        assert not manager.is_busy

    def test_failure_without_diagnostic(self, manager, encoder, listener, input_file, tmp_path, flush):
        manager.start(input_file, tmp_path / "out.webm")
        encoder.complete(EncoderStatus.FAILURE)
        flush()
        assert listener.of("failure")[0][1] == "Conversion failed: Unknown error"

    def test_new_job_after_completion(self, manager, encoder, listener, input_file, tmp_path, flush):
        manager.start(input_file, tmp_path / "a.webm")
        encoder.complete(EncoderStatus.SUCCESS, output_bytes=1)
        manager.start(input_file, tmp_path / "b.webm")
        encoder.complete(EncoderStatus.SUCCESS, output_bytes=2)
        flush()
        assert listener.names() == ["start", "success", "start", "success"]

    def test_duplicate_completion_ignored(self, manager, encoder, listener, input_file, tmp_path, flush):
        manager.start(input_file, tmp_path / "out.webm")
        encoder.complete(EncoderStatus.SUCCESS, output_bytes=1)
        encoder.complete(EncoderStatus.FAILURE)
        flush()
        assert listener.names() == ["start", "success"]


class TestProgress:
    def test_frame_progress(self, manager, encoder, listener, input_file, tmp_path, flush):
        manager.start(input_file, tmp_path / "out.webm")
        encoder.emit(frame_number=150)
        flush()
        assert listener.of("progress") == [("progress", 50, 150, 300)]

    def test_last_frame_seen_tracked(self, manager, encoder, input_file, tmp_path):
        job = manager.start(input_file, tmp_path / "out.webm")
        encoder.emit(frame_number=30)
        encoder.emit(frame_number=60)
        assert job.last_frame_seen == 60

    def test_progress_after_terminal_dropped(self, manager, encoder, listener, input_file, tmp_path, flush):
        manager.start(input_file, tmp_path / "out.webm")
        launch = encoder.last
        encoder.complete(EncoderStatus.SUCCESS, output_bytes=1)
        launch["on_sample"](ProgressSample(frame_number=10))
        flush()
        assert listener.names() == ["start", "success"]


class TestCancel:
    def test_cancel_when_idle_is_noop(self, manager, listener, flush):
        assert manager.cancel() is False
        flush()
        assert listener.events == []

    def test_cancel_frees_slot_immediately(self, manager, encoder, input_file, tmp_path):
        manager.start(input_file, tmp_path / "out.webm")
        assert manager.cancel() is True

        assert encoder.last["session"].cancel_calls == 1
        assert not manager.is_busy
        assert manager.state == JobState.IDLE

    def test_cancel_cleanup_on_completion(self, manager, encoder, ledger, listener, input_file, tmp_path, flush):
        out = tmp_path / "out.webm"
        manager.start(input_file, out)
        manager.cancel()
        encoder.complete(EncoderStatus.CANCELLED, output_bytes=100)
        flush()

        assert listener.names() == ["start", "cancelled"]
        assert not out.exists()
        assert ledger.get(out) == 1000

    def test_second_cancel_is_noop(self, manager, encoder, input_file, tmp_path):
        manager.start(input_file, tmp_path / "out.webm")
        assert manager.cancel() is True
        assert manager.cancel() is False
        assert encoder.last["session"].cancel_calls == 1

    def test_start_after_cancel_other_path(self, manager, encoder, listener, input_file, tmp_path, flush):
        manager.start(input_file, tmp_path / "a.webm")
        manager.cancel()
        first = encoder.last

        manager.start(input_file, tmp_path / "b.webm")
        second = encoder.last
        assert manager.is_busy

        # Late completion of the cancelled job must not free the new job's slot
        encoder.complete(EncoderStatus.CANCELLED, launch=first)
        assert manager.is_busy
        assert manager.state == JobState.RUNNING

        encoder.complete(EncoderStatus.SUCCESS, output_bytes=5, launch=second)
        flush()
        assert listener.names() == ["start", "start", "cancelled", "success"]

    def test_start_after_cancel_same_path_waits_for_cleanup(self, manager, encoder, input_file, tmp_path):
        out = tmp_path / "out.webm"
        manager.start(input_file, out)
        manager.cancel()

        with pytest.raises(CleanupPending):
            manager.start(input_file, out)
        assert not manager.is_busy

        encoder.complete(EncoderStatus.CANCELLED)
        manager.start(input_file, out)
        assert manager.state == JobState.RUNNING

    def test_progress_suppressed_after_cancel(self, manager, encoder, listener, input_file, tmp_path, flush):
        manager.start(input_file, tmp_path / "out.webm")
        manager.cancel()
        encoder.emit(frame_number=100)
        encoder.complete(EncoderStatus.CANCELLED)
        flush()
        assert listener.names() == ["start", "cancelled"]


def test_truncate():
    assert truncate("short") == "short"
    assert truncate("a" * 250) == "a" * 200


def test_wait_without_jobs(manager):
    assert manager.wait(timeout=0.1) is True

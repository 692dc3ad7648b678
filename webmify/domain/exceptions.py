"""
Exception types raised by the conversion core.

`InputNotFound` and `AlreadyRunning` are raised synchronously from
`ConversionJobManager.start`. Everything that goes wrong after a job has been
accepted is caught by the manager and turned into an `on_failure`
notification, so the remaining types mostly serve as tags for log messages
and for the failure text handed to the listener.
"""


class WebmifyError(Exception):
    """Base class for all webmify errors."""

    pass


class InputNotFound(WebmifyError):
    """The input path does not resolve to an existing regular file."""

    pass


class AlreadyRunning(WebmifyError):
    """A conversion is already in flight; the new request was ignored."""

    pass


class CleanupPending(AlreadyRunning):
    """
    The requested output path still belongs to a cancelled job whose
    partial-output cleanup has not run yet.
    """

    pass


class OutputPrepFailure(WebmifyError):
    """The output directory could not be created or a stale output removed."""

    pass


class LaunchFailure(WebmifyError):
    """The encoder process could not be started."""

    pass


class EncodeFailure(WebmifyError):
    """The encoder exited with an error status."""

    pass


class PostprocessMissingOutput(WebmifyError):
    """The encoder reported success but the output file is not there."""

    pass


class LedgerParseError(WebmifyError):
    """A persisted ledger record could not be parsed."""

    pass

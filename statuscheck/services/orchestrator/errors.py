"""Failure taxonomy for status-check runs.

Collaborator failures are recoverable: they are recorded into the run result
at the call site. `InternalFailure` is the only run-fatal category.
"""


class CollaboratorError(Exception):
    """A downstream call failed. `retryable` drives the retry helper."""

    dependency = "collaborator"

    def __init__(self, message: str, *, retryable: bool = True, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class LookupFailure(CollaboratorError):
    """Payment not found in the lookup index, or the index errored."""

    dependency = "lookup"


class NotifyFailure(CollaboratorError):
    """Notifier rejected or errored for a whole chunk."""

    dependency = "notifier"


class StatusCheckFailure(CollaboratorError):
    """Status checker rejected or errored for one payment."""

    dependency = "status_check"


class InternalFailure(RuntimeError):
    """State persistence, substrate or invariant failure. Aborts the run."""


class RunNotFound(LookupError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"run not found: {run_id}")
        self.run_id = run_id


class ResultNotReady(Exception):
    def __init__(self, run_id: str, phase: str) -> None:
        super().__init__(f"run {run_id} still in phase {phase}")
        self.run_id = run_id
        self.phase = phase


class RunFailed(Exception):
    def __init__(self, run_id: str, error: str) -> None:
        super().__init__(f"run {run_id} failed: {error}")
        self.run_id = run_id
        self.error = error

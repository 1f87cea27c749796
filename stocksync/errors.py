"""Sync error taxonomy.

Every error the engine raises or collects derives from SyncError. The
``retryable`` flag is what the shared RetryPolicy consults; ``public_message``
is the short text that may reach a SyncRun's error list (never a traceback).

Propagation:
  - TransientNetworkError / CapacityExceededError: retried with backoff
  - AuthError: aborts the fetch stage immediately, run -> error
  - MalformedDataError: record level, fail open (treated as changed)
  - PartialBatchFailure: collected per batch, run continues -> partial
  - StuckRunError: produced by the sweep, never raised inline
  - SyncConflictError: second start while a run is claimed
  - SyncTimeoutError / SyncCancelledError: run stops between batches -> error
  - RunFinalizedError: second finalize of the same run (operator races)
"""


class SyncError(Exception):
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    @property
    def public_message(self) -> str:
        name = self.__class__.__name__
        return f"{name}: {self.message}"[:300] if self.message else name


class TransientNetworkError(SyncError):
    """Timeout, transport failure, 429/5xx or a malformed JSON body."""

    retryable = True

    def __init__(self, message: str = "", status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(SyncError):
    """401/403, or an HTML page where JSON was expected (expired session)."""

    def __init__(self, message: str = "", status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedDataError(SyncError):
    """A single source record could not be interpreted."""

    def __init__(self, message: str = "", sku: str | None = None):
        super().__init__(message)
        self.sku = sku


class CapacityExceededError(SyncError):
    """Rate limiter could not grant a token within the caller's timeout."""

    retryable = True

    def __init__(self, message: str = "", wait_seconds: float = 0.0):
        super().__init__(message)
        self.wait_seconds = wait_seconds


class PartialBatchFailure(SyncError):
    """One batch failed to commit; the run continues with the next batch."""

    def __init__(self, batch_number: int, size: int, cause: BaseException, skus: list[str] | None = None):
        super().__init__(f"batch {batch_number} ({size} items) failed: {cause}")
        self.batch_number = batch_number
        self.size = size
        self.cause = cause
        # SKUs of the rolled-back batch, for a targeted retry
        self.skus = list(skus or [])


class StuckRunError(SyncError):
    """A run left in ``running`` past the stuck timeout."""

    def __init__(self, run_id: int, running_minutes: int):
        super().__init__(f"run {run_id} running for {running_minutes} minutes")
        self.run_id = run_id
        self.running_minutes = running_minutes


class SyncConflictError(SyncError):
    """Another run already holds the single running slot."""

    def __init__(self, message: str = "", running_run_id: int | None = None):
        super().__init__(message or "A sync is already in progress")
        self.running_run_id = running_run_id


class SyncTimeoutError(SyncError):
    """The strategy's overall time budget was exhausted."""


class SyncCancelledError(SyncError):
    """The run was aborted by an external signal."""


class RunFinalizedError(SyncError):
    """A finalized SyncRun is immutable; it cannot be finalized again."""

    def __init__(self, run_id: int):
        super().__init__(f"run {run_id} is already finalized")
        self.run_id = run_id

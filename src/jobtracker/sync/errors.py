"""
Sync error taxonomy.

Every failure the engine reports is one of five kinds. Callers branch on
``exc.kind`` (or the exception class), never on message text.

  CONNECTION  probe or network-level failure; aborts the whole cycle and
              downgrades sync availability
  TRANSPORT   per-request HTTP failure during push/pull; isolated to the
              item or table, retried through the outbox backoff policy
  AUTH        401 that survived one token refresh; isolated like TRANSPORT,
              succeeds again once the user signs back in
  VALIDATION  malformed payload; never retried automatically
  BUSY        a sync was requested while another one was running; nothing
              was attempted
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    CONNECTION = "connection"
    TRANSPORT = "transport"
    AUTH = "auth"
    VALIDATION = "validation"
    BUSY = "busy"


class SyncError(RuntimeError):
    """Base class for all sync engine errors."""

    kind: ErrorKind = ErrorKind.TRANSPORT
    retryable: bool = True


class RemoteConnectionError(SyncError):
    """Raised when the remote API cannot be reached."""

    kind = ErrorKind.CONNECTION
    retryable = True


class TransportError(SyncError):
    """Raised when a single push or pull request fails."""

    kind = ErrorKind.TRANSPORT

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        # Client errors will fail the same way again; timeouts and throttling won't.
        if status_code is not None and 400 <= status_code < 500:
            self.retryable = status_code in (408, 429)
        else:
            self.retryable = True


class AuthError(SyncError):
    """Raised when a request is still rejected with 401 after a token refresh."""

    kind = ErrorKind.AUTH
    retryable = True


class PayloadValidationError(SyncError):
    """Raised when an outbox payload or pulled record is malformed."""

    kind = ErrorKind.VALIDATION
    retryable = False


class SyncInProgressError(SyncError):
    """Raised when a full sync is requested while another one is running."""

    kind = ErrorKind.BUSY
    retryable = True

    def __init__(self, message: str = "Sync already in progress"):
        super().__init__(message)

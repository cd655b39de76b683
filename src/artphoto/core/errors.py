"""Exception taxonomy for the Art Photo core.

Every failure that crosses the core boundary is one of the classes below, so
callers (and the HTTP layer) always receive a named failure rather than a raw
transport exception.

- :class:`ConfigurationError` -- missing credentials or storage settings;
  raised eagerly, before any network call.
- :class:`ValidationError` -- bad caller input.
- :class:`AuthError` -- the remote API rejected the signature or credentials.
- :class:`RemoteAPIError` -- non-2xx response, non-success business code,
  transport failure or unparseable body.
- :class:`RemoteTaskFailed` -- the remote task reached the ``failed`` state.
- :class:`UploadError` -- one artifact could not be externalized.
- :class:`GenerationTimeout` -- the polling loop ran out of budget.
- :class:`PersistenceWarning` -- ledger read/write problem; logged and
  emitted through :mod:`warnings`, never raised.
"""

from __future__ import annotations


class ArtPhotoError(Exception):
    """Base class for all errors raised by the Art Photo core."""


class ConfigurationError(ArtPhotoError):
    """Required configuration (credentials, bucket, domain) is missing."""


class ValidationError(ArtPhotoError):
    """Caller input failed validation.

    The message is intended to be shown directly to the user.
    """


class AuthError(ArtPhotoError):
    """The remote API refused the request's authentication."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteAPIError(ArtPhotoError):
    """The remote API call did not succeed.

    Attributes:
        status_code: HTTP status of the response, or ``None`` when the
            request never produced one (network failure).
        code: Business ``Result.code`` reported by the remote API, if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: int | str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class RemoteTaskFailed(ArtPhotoError):
    """The remote generation task finished in the ``failed`` state."""

    def __init__(self, task_id: str, message: str | None = None) -> None:
        super().__init__(message or f"generation task {task_id} failed")
        self.task_id = task_id


class UploadError(ArtPhotoError):
    """A binary artifact could not be pushed to the artifact store."""


class GenerationTimeout(ArtPhotoError, TimeoutError):
    """Polling exceeded its attempt count or wall-clock deadline."""

    def __init__(self, task_id: str, attempts: int, message: str = "generation timed out") -> None:
        super().__init__(message)
        self.task_id = task_id
        self.attempts = attempts


class PersistenceWarning(UserWarning):
    """History ledger could not be read or written.

    Emitted with :func:`warnings.warn` next to the log record; the ledger
    never raises it to callers.
    """

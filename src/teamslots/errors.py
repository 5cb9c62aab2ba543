"""Error hierarchy for availability sync and validation.

Errors split into transient failures (retry later, fall back to the local
copy) and permanent failures (surface to the caller, never retry). The
tenacity policies in ``teamslots.sync`` retry on ``TransientError`` only.

Example usage with tenacity:
    @retry(retry=retry_if_exception_type(TransientError), stop=stop_after_attempt(3))
    async def push_record(record):
        ...
"""


class TeamSlotsError(Exception):
    """Base exception for all teamslots errors."""

    pass


class TransientError(TeamSlotsError):
    """Temporary failure that may succeed on retry."""

    pass


class NetworkError(TransientError):
    """RemoteStore unreachable, timed out or answering with a server error.

    Triggers the offline fallback path. Never shown to the user as a fatal
    error, at most as a staleness indicator.
    """

    pass


class PermanentError(TeamSlotsError):
    """Failure that won't succeed on retry."""

    pass


class ValidationError(PermanentError):
    """Malformed input to a model constructor or mutator.

    Not a ``ValueError`` subclass, so pydantic lets it propagate out of
    field validators unchanged instead of wrapping it.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class ConflictError(PermanentError):
    """Business-rule uniqueness violation, e.g. a duplicate team name."""

    pass


class NotFoundError(PermanentError):
    """Referenced record, team or document does not exist."""

    pass


class SyncClosedError(PermanentError):
    """Operation attempted on a coordinator that has been closed."""

    pass

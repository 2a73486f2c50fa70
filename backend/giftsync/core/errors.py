"""Error taxonomy for the selection pipeline.

Every error carries the pipeline ``step`` it came from (``local``, ``remote``,
``order``, ``sync`` or ``oracle``) so callers can message accurately.
"""


class GiftSyncError(Exception):
    step: str | None = None

    def __init__(self, message: str = "", *, step: str | None = None) -> None:
        super().__init__(message)
        if step is not None:
            self.step = step


class AuthenticationError(GiftSyncError):
    """No authenticated actor. Retrying cannot fix this without a sign-in."""

    step = "remote"


class InvalidSelectionError(GiftSyncError, ValueError):
    """Malformed candidate, rejected before any store is touched."""

    step = "local"


class RemoteStoreError(GiftSyncError):
    step = "remote"


class OrderEmissionError(GiftSyncError):
    step = "order"

    def __init__(
        self,
        message: str = "",
        *,
        primary_error: BaseException | None = None,
        fallback_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.primary_error = primary_error
        self.fallback_error = fallback_error


class SelectionPipelineError(GiftSyncError):
    """A selection registered locally but a later step did not complete."""

    def __init__(self, message: str, *, step: str, cause: BaseException | None = None) -> None:
        super().__init__(message, step=step)
        self.cause = cause

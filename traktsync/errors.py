from typing import Optional


class TraktSyncError(Exception):
    pass


class AuthError(TraktSyncError):
    """Credentials are missing, rejected or could not be refreshed. Aborts a whole run."""


class UpstreamError(TraktSyncError):
    """Non-2xx response (or transport failure) from Trakt or TMDB."""

    def __init__(self, status: Optional[int], body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"upstream error {status}: {body[:200]}" if status else f"upstream error: {body[:200]}")


class TransformError(TraktSyncError):
    """A source record has no usable TMDB id."""


class StorageError(TraktSyncError):
    pass

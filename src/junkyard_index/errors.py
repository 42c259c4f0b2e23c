class JunkyardError(Exception):
    """Base class for errors raised by junkyard_index."""


class FetchError(JunkyardError):
    """An outbound HTTP call failed."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class TransientHTTPError(FetchError):
    """5xx, network failure or timeout. Worth retrying."""


class PermanentHTTPError(FetchError):
    """4xx or malformed response. Retrying will not help."""


class SourceError(JunkyardError):
    """A unit of work (one location, or a whole source) produced no data."""

    def __init__(self, source: str, unit: str, cause: Exception | None = None):
        super().__init__(f"{source}-{unit}: {cause}")
        self.source = source
        self.unit = unit
        self.cause = cause

    @property
    def key(self) -> str:
        return f"{self.source}-{self.unit}"


class SearchCancelled(JunkyardError):
    """The caller fired the cancel token. Not a failure."""


class FilterBagError(JunkyardError):
    """A stored saved-search filter bag failed validation."""


class AlertPreconditionError(JunkyardError):
    """An alert toggle cannot be enabled for this user."""

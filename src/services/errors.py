"""Domain exceptions raised by the service layer.

``http_status`` is what the API layer answers with when one escapes a route.
"""


class ServiceError(Exception):
    """Base class for service-layer errors."""

    http_status = 500


class ValidationError(ServiceError):
    """Arguments rejected before any state was touched."""

    http_status = 400


class NotFoundError(ServiceError):
    """A referenced record does not exist."""

    http_status = 404


class ProviderError(ServiceError):
    """An outbound generation request was rejected or failed."""

    http_status = 502

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ConcurrencyConflictError(ServiceError):
    """An optimistic write kept losing to concurrent writers."""

    http_status = 409


class StaleEntryError(ServiceError):
    """A queue entry was failed by the stalled-entry sweep while being submitted."""

    http_status = 409

from fastapi import HTTPException, status


class MarketplaceError(HTTPException):
    """
    Base error raised by services and routes.

    Subclasses fix the HTTP status; `kind` is the stable, machine-readable
    reason a client can switch on (e.g. "OutOfStock").
    """

    status_code = status.HTTP_400_BAD_REQUEST
    default_kind = "MarketplaceError"

    def __init__(self, detail: str, kind: str | None = None):
        self.kind = kind or self.default_kind
        super().__init__(status_code=self.status_code, detail=detail)


class ValidationError(MarketplaceError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_kind = "ValidationError"


class NotFoundError(MarketplaceError):
    status_code = status.HTTP_404_NOT_FOUND
    default_kind = "NotFound"


class ForbiddenError(MarketplaceError):
    status_code = status.HTTP_403_FORBIDDEN
    default_kind = "PermissionDenied"


class ConflictError(MarketplaceError):
    status_code = status.HTTP_409_CONFLICT
    default_kind = "Conflict"

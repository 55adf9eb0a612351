class VisitError(Exception):
    """Base for every rejected booking, token or check-in transition."""

    code = "VisitError"
    status_code = 400

    def __init__(self, detail: str = "", **extra):
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.extra = extra

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.detail, **self.extra}


class CapacityExceeded(VisitError):
    code = "CapacityExceeded"
    status_code = 409


class ValidationError(VisitError):
    code = "ValidationError"
    status_code = 400


class NotFound(VisitError):
    code = "NotFound"
    status_code = 404


class BookingCancelled(VisitError):
    code = "BookingCancelled"
    status_code = 409


class LinkExpired(VisitError):
    code = "LinkExpired"
    status_code = 410


class AlreadySubmitted(VisitError):
    code = "AlreadySubmitted"
    status_code = 409


class AlreadyUsed(VisitError):
    code = "AlreadyUsed"
    status_code = 409


class AlreadyCheckedIn(VisitError):
    code = "AlreadyCheckedIn"
    status_code = 409


class PrimaryVisitorMissing(VisitError):
    code = "PrimaryVisitorMissing"
    status_code = 409


class StorageError(VisitError):
    code = "StorageError"
    status_code = 500

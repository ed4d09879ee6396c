class BookingError(Exception):
    """
    Base for every failure a service function reports to its caller.

    `kind` is the stable machine-readable code put in the response body,
    `status_code` the HTTP status the API layer maps it to.
    """

    status_code = 500
    kind = "internal"

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"kind": self.kind, "message": self.message}
        body.update(self.extra)
        return body


class BadRequest(BookingError):
    status_code = 400
    kind = "bad_request"


class Unauthorized(BookingError):
    status_code = 401
    kind = "unauthorized"


class Forbidden(BookingError):
    status_code = 403
    kind = "forbidden"


class NotFound(BookingError):
    status_code = 404
    kind = "not_found"


class Conflict(BookingError):
    status_code = 409
    kind = "conflict"

    def __init__(self, message: str, ranges: list | None = None, **extra):
        super().__init__(message, **extra)
        self.ranges = ranges or []

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["ranges"] = [
            {
                "check_in": r.check_in.isoformat(),
                "check_out": r.check_out.isoformat(),
                "source": r.source,
            }
            for r in self.ranges
        ]
        return body


class Internal(BookingError):
    status_code = 500
    kind = "internal"


class GatewayTimeout(Internal):
    status_code = 504
    kind = "timeout"

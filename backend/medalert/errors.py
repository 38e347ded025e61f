"""Error taxonomy shared by HTTP routes, the realtime hub and the chat router.

Every error carries the HTTP status it maps to and a message that is safe to
show to the caller. Internal details stay in the log.
"""


class DispatchError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(DispatchError):
    status_code = 400
    default_message = "Invalid input"


class Unauthenticated(DispatchError):
    status_code = 401
    default_message = "Not authenticated"


class Unauthorized(DispatchError):
    status_code = 403
    default_message = "Not authorized"


class NotFound(DispatchError):
    status_code = 404
    default_message = "Not found"


class Conflict(DispatchError):
    status_code = 409
    default_message = "Conflict"


class AlreadyDispatched(Conflict):
    default_message = "Ambulance unit is not available"


class TransportError(DispatchError):
    """Malformed realtime frame. Dropped without closing the connection."""

    status_code = 400
    default_message = "Malformed message"


class PersistenceFailure(DispatchError):
    status_code = 500
    default_message = "Internal server error"

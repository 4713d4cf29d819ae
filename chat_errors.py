"""
Error taxonomy shared by the HTTP routes, the socket handlers and the gateway.

Every error carries an HTTP status and a message that is safe to show to the
client. Anything that is not a ChatError is treated as an internal failure.
"""


class ChatError(Exception):
    status = 500
    default_message = "Internal server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.message}


class Unauthenticated(ChatError):
    status = 401
    default_message = "not logged in"


class InvalidCredentials(Unauthenticated):
    # Same text for unknown user and wrong password
    default_message = "Invalid username or password"


class Forbidden(ChatError):
    status = 403
    default_message = "forbidden"


class NotFound(ChatError):
    status = 404
    default_message = "not found"


class InvalidInput(ChatError):
    status = 400
    default_message = "bad params"


class Conflict(ChatError):
    status = 400
    default_message = "conflict"


class ServiceUnavailable(ChatError):
    status = 503
    default_message = "Maintenance mode"

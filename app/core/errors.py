# app/core/errors.py
"""
Error taxonomy for the chat API.

Every failure that is surfaced before a stream starts is a ``ChatError`` whose
code has the shape ``"<type>:<surface>"`` (for example ``"rate_limit:chat"``).
The type decides the HTTP status, the full code decides the message.
"""

from typing import Optional

from fastapi.responses import JSONResponse


STATUS_BY_TYPE = {
    "bad_request": 400,
    "unauthorized": 401,
    "forbidden": 403,
    "not_found": 404,
    "rate_limit": 429,
    "offline": 503,
}

MESSAGES_BY_CODE = {
    "bad_request:api": "The request couldn't be processed. Please check your input and try again.",
    "bad_request:activate_gateway": "The model gateway requires billing to be set up before it can serve requests.",
    "unauthorized:chat": "You need to sign in to continue.",
    "forbidden:chat": "This chat belongs to another user. Please check the chat ID and try again.",
    "not_found:chat": "The requested chat was not found. Please check the chat ID and try again.",
    "not_found:stream": "The requested stream was not found or has expired.",
    "rate_limit:chat": "You have exceeded your maximum number of messages for the day. Please try again later.",
    "offline:chat": "We're having trouble sending your message. Please check your internet connection and try again.",
}

# Surfaces whose details must never leak to the client
_DATABASE_SURFACES = {"database"}


class ChatError(Exception):
    """Structured, pre-stream failure of a chat request."""

    def __init__(self, code: str, cause: Optional[str] = None):
        error_type, _, surface = code.partition(":")
        if error_type not in STATUS_BY_TYPE:
            raise ValueError(f"Unknown error type in code {code!r}")
        self.code = code
        self.type = error_type
        self.surface = surface
        self.cause = cause
        self.message = MESSAGES_BY_CODE.get(code, "Something went wrong. Please try again later.")
        self.status_code = STATUS_BY_TYPE[error_type]
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "cause": self.cause}

    def to_response(self) -> JSONResponse:
        if self.surface in _DATABASE_SURFACES:
            return JSONResponse(
                status_code=self.status_code,
                content={"code": "", "message": "Something went wrong. Please try again later."},
            )
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class RequestInvalidError(ChatError):
    def __init__(self, cause: Optional[str] = None):
        super().__init__("bad_request:api", cause)


class UnauthorizedError(ChatError):
    def __init__(self, cause: Optional[str] = None):
        super().__init__("unauthorized:chat", cause)


class ForbiddenError(ChatError):
    def __init__(self, cause: Optional[str] = None):
        super().__init__("forbidden:chat", cause)


class NotFoundError(ChatError):
    def __init__(self, surface: str = "chat", cause: Optional[str] = None):
        super().__init__(f"not_found:{surface}", cause)


class RateLimitedError(ChatError):
    def __init__(self, cause: Optional[str] = None):
        super().__init__("rate_limit:chat", cause)


class ProviderUnavailableError(ChatError):
    """The model call failed or was rejected before streaming began."""

    def __init__(self, cause: Optional[str] = None, billing: bool = False):
        super().__init__("bad_request:activate_gateway" if billing else "offline:chat", cause)

"""Exception types raised by the bridge core."""
from http import HTTPStatus
from typing import Optional


class KimiBridgeError(Exception):
    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRequestError(KimiBridgeError):
    """The client request is malformed (empty messages, wrong trailing role, ...)."""

    status_code = HTTPStatus.BAD_REQUEST


class UnsupportedModelError(KimiBridgeError):
    status_code = HTTPStatus.BAD_REQUEST

    def __init__(self, model: object) -> None:
        super().__init__(f"Unsupported model: {model}")
        self.model = model


class NonceError(KimiBridgeError):
    """The upstream nonce could not be obtained."""

    status_code = HTTPStatus.BAD_GATEWAY


class UpstreamUnavailableError(NonceError):
    pass


class TokenExtractionError(NonceError):
    pass


class UpstreamError(KimiBridgeError):
    """The upstream chat call failed (bad status, bad body or success=false)."""

    status_code = HTTPStatus.BAD_GATEWAY

    def __init__(self, message: str, upstream_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status

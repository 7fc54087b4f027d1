"""
Gateway error taxonomy.

Every error carries a user-facing title and detail; the exception handler in
``main.py`` renders them as the destructive toast payload the UI shows.
"""
from typing import Optional


class GatewayError(Exception):
    status_code: int = 500
    title: str = "Something went wrong"
    retryable: bool = False

    def __init__(self, detail: str, *, title: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        if title is not None:
            self.title = title
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict:
        return {
            "title": self.title,
            "detail": self.detail,
            "variant": "destructive",
            "retryable": self.retryable,
        }


class ValidationFault(GatewayError):
    """Caught before any network call; the user fixes the input."""

    status_code = 422
    title = "Invalid request"
    retryable = True


class BackendError(GatewayError):
    """Non-2xx response or transport failure talking to the ride backend."""

    status_code = 502
    title = "Request failed"
    retryable = True


class PaymentConfigurationError(GatewayError):
    """Missing client secret or card; nothing the user can retry."""

    status_code = 500
    title = "Payment unavailable"


class CardError(GatewayError):
    """Processor-reported card problem, message shown verbatim."""

    status_code = 402
    title = "Payment failed"


class ChatSendError(GatewayError):
    status_code = 503
    title = "Failed to Send Message"
    retryable = True

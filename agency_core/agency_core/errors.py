"""Error taxonomy shared by the billing orchestration services.

Every error carries a short machine-readable ``reason`` and the HTTP status
code the API layer should answer with.  Routers never need to translate
these by hand; the application registers a single handler for
:class:`BillingError`.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all orchestration failures surfaced to a caller."""

    status_code: int = 400
    default_reason: str = "billing_error"

    def __init__(self, message: str, *, reason: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, str]:
        return {"detail": self.message, "code": self.reason}


class ValidationError(BillingError):
    """Bad input or a business-rule denial (unknown tier, over-limit, ...)."""

    status_code = 400
    default_reason = "validation_error"


class PreconditionError(BillingError):
    """The entity is not in a state that permits the requested action."""

    status_code = 409
    default_reason = "precondition_failed"


class NotFoundError(BillingError):
    """The referenced entity does not exist or is not visible to the caller."""

    status_code = 404
    default_reason = "not_found"


class RemoteGatewayError(BillingError):
    """The external billing processor failed, rejected the call, or timed out."""

    status_code = 502
    default_reason = "remote_gateway_error"

    def __init__(self, message: str, *, operation: str, reason: str | None = None) -> None:
        super().__init__(message, reason=reason)
        self.operation = operation


class ConfigurationError(BillingError):
    """A tier, add-on or package has no mapped external price."""

    status_code = 503
    default_reason = "not_configured"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(f"Not configured: {message}", reason=reason)

from fastapi import HTTPException, status


def _detail(reason: str, message: str, **extra) -> dict:
    return {"reason": reason, "message": message, **extra}


class NotFoundError(HTTPException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_detail("not_found", detail),
        )


class ConflictError(HTTPException):
    reason = "conflict"

    def __init__(self, detail: str = "Conflict", **extra):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=_detail(self.reason, detail, **extra),
        )


class DuplicateOrderError(ConflictError):
    reason = "duplicate_order"

    def __init__(self, source: str, source_order_id: str, invoice_number: str | None = None):
        message = f"Order {source_order_id} from {source} has already been received"
        if invoice_number:
            message += f" as invoice {invoice_number}"
        super().__init__(message, invoice_number=invoice_number)
        self.invoice_number = invoice_number


class BadRequestError(HTTPException):
    reason = "bad_request"

    def __init__(self, detail: str = "Bad request"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_detail(self.reason, detail),
        )


class NoOrganizationError(BadRequestError):
    reason = "no_organization"

    def __init__(self, detail: str = "Organization not found"):
        super().__init__(detail)


class StateError(BadRequestError):
    reason = "invalid_state"


class AlreadySentError(StateError):
    reason = "already_sent"

    def __init__(self, invoice_number: str, current: str):
        super().__init__(f"Invoice {invoice_number} is not a draft (status {current})")


class NotEditableError(StateError):
    reason = "not_editable"

    def __init__(self, invoice_number: str, current: str):
        super().__init__(
            f"Invoice {invoice_number} can only be changed while it is a draft (status {current})"
        )


class CannotCancelPaidError(StateError):
    reason = "cannot_cancel_paid"

    def __init__(self, invoice_number: str):
        super().__init__(
            f"Invoice {invoice_number} is paid and cannot be cancelled; issue a credit note instead"
        )


class InvalidStatusTransitionError(StateError):
    reason = "invalid_status_transition"

    def __init__(self, current: str, requested: str, allowed: set[str]):
        allowed_str = ", ".join(sorted(allowed)) if allowed else "none"
        super().__init__(
            f"Invalid status transition from '{current}' to '{requested}'. "
            f"Allowed transitions: {allowed_str}"
        )


class UnauthorizedError(HTTPException):
    reason = "unauthorized"

    def __init__(self, detail: str = "Not authenticated"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=_detail(self.reason, detail),
        )


class MissingCredentialError(UnauthorizedError):
    reason = "missing_credential"


class RequestExpiredError(UnauthorizedError):
    reason = "request_expired"

    def __init__(self, detail: str = "Request expired"):
        super().__init__(detail)


class InvalidCredentialError(UnauthorizedError):
    reason = "invalid_credential"

    def __init__(self, detail: str = "Invalid API key"):
        super().__init__(detail)


class InvalidSignatureError(UnauthorizedError):
    reason = "invalid_signature"

    def __init__(self, detail: str = "Invalid signature"):
        super().__init__(detail)


class DependencyError(HTTPException):
    """A collaborator (database, SMTP, storage) failed while serving the request."""

    def __init__(self, detail: str = "Upstream dependency failed"):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=_detail("dependency_failure", detail),
        )


class AmountOutOfRangeError(BadRequestError):
    reason = "amount_out_of_range"

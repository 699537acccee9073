from fastapi import status


class BillingError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    message: str = "Internal error"

    def __init__(self, message: str | None = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class ValidationError(BillingError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    message = "Invalid request"


class BadRequestError(BillingError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Bad request"


class NotFoundError(BillingError):
    status_code = status.HTTP_404_NOT_FOUND
    message = "Not found"


class ForbiddenError(BillingError):
    status_code = status.HTTP_403_FORBIDDEN
    message = "Not allowed"


class ConflictError(BillingError):
    status_code = status.HTTP_409_CONFLICT
    message = "Request conflicts with current billing state"


class SignatureError(BillingError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid signature"


class InvalidPayloadError(BillingError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid payload"


class InsufficientFundsError(BillingError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, available):
        self.available = available
        super().__init__(f"Insufficient balance. Available: ${available:,.2f}")


class GatewaySyncError(BillingError):
    """An upstream payment gateway call failed.

    ``operation`` is kept for logs; the message shown to callers stays generic.
    """

    status_code = status.HTTP_502_BAD_GATEWAY
    message = "Payment provider request failed. Please try again later."

    def __init__(self, operation: str, message: str | None = None):
        self.operation = operation
        super().__init__(message)


class InternalError(BillingError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Internal error"


class PaymentMethodNotFoundError(NotFoundError):
    def __init__(self, method_id):
        super().__init__(f"Payment method {method_id} not found")


class SubscriptionNotFoundError(NotFoundError):
    def __init__(self):
        super().__init__("No active subscription found")


class InvoiceNotFoundError(NotFoundError):
    def __init__(self, invoice_id):
        super().__init__(f"Invoice {invoice_id} not found")

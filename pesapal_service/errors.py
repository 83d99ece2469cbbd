class PaymentVerificationError(Exception):
    reason = "Error"
    retryable = False

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.reason)
        self.context = context


class NotFound(PaymentVerificationError):
    reason = "NotFound"


class SignatureInvalid(PaymentVerificationError):
    """Stored signature does not match the stored metadata, or the row is in an impossible state."""
    reason = "Rejected"


class AmountMismatch(PaymentVerificationError):
    reason = "AmountMismatch"


class GatewayPending(PaymentVerificationError):
    reason = "Pending"
    retryable = True


class GatewayError(PaymentVerificationError):
    reason = "GatewayError"
    retryable = True


class AuthError(GatewayError):
    pass


class FulfillmentError(PaymentVerificationError):
    # retried only by running the whole verification again
    reason = "FulfillmentError"
    retryable = True

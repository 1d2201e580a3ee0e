"""
Typed failures raised by the gateway.

Every error carries a stable ``kind`` so callers can branch on it instead of
parsing message text, and an ``http_status`` used by the API layer.
"""
from typing import Any, Optional


class PaymentError(Exception):
    kind = "payment_error"
    http_status = 500
    default_message = "Payment processing failed"

    def __init__(self, message: Optional[str] = None, *,
                 detail: Any = None,
                 upstream_status: Optional[int] = None,
                 payment_id: Optional[str] = None):
        self.message = message or self.default_message
        self.detail = detail
        self.upstream_status = upstream_status
        self.payment_id = payment_id
        super().__init__(self.message)

    def to_dict(self, include_detail: bool = False) -> dict:
        out = {"kind": self.kind}
        if self.payment_id:
            out["payment_id"] = self.payment_id
        if not include_detail:
            return out
        cause = self.__cause__
        if self.upstream_status is None and isinstance(cause, PaymentError):
            upstream_status = cause.upstream_status
        else:
            upstream_status = self.upstream_status
        if upstream_status is not None:
            out["upstream_status"] = upstream_status
        detail = self.detail
        if detail is None and cause is not None:
            if isinstance(cause, PaymentError):
                detail = {"kind": cause.kind, "message": cause.message, "detail": cause.detail}
            else:
                detail = str(cause)
        if detail is not None:
            out["detail"] = detail
        return out


# processor side

class ProcessorError(PaymentError):
    kind = "processor_error"
    http_status = 502
    default_message = "Payment processor error"


class CredentialsMissing(ProcessorError):
    kind = "credentials_missing"
    http_status = 500
    default_message = "PayPal client id and secret must both be configured"


class InvalidCredentials(ProcessorError):
    kind = "invalid_credentials"
    default_message = "PayPal rejected the configured credentials"


class AccessForbidden(ProcessorError):
    kind = "access_forbidden"
    default_message = "PayPal denied access for the configured credentials"


class ProcessorUnreachable(ProcessorError):
    kind = "processor_unreachable"
    http_status = 503
    default_message = "PayPal could not be reached"


class TokenAcquisitionFailed(ProcessorError):
    kind = "token_acquisition_failed"
    default_message = "Failed to get PayPal access token"


class ApprovalLinkMissing(ProcessorError):
    kind = "approval_link_missing"
    default_message = "PayPal order response has no approve link"


class CaptureDataMissing(ProcessorError):
    kind = "capture_data_missing"
    default_message = "PayPal capture response has no capture details"


class OrderNotFound(ProcessorError):
    kind = "order_not_found"
    http_status = 404
    default_message = "PayPal order not found"


class ProcessorRequestFailed(ProcessorError):
    kind = "processor_request_failed"
    default_message = "PayPal request failed"


class OrderAlreadyCaptured(ProcessorRequestFailed):
    kind = "order_already_captured"
    http_status = 409
    default_message = "PayPal order was already captured"


# lifecycle

class PaymentInitiationFailed(PaymentError):
    kind = "payment_initiation_failed"
    http_status = 502
    default_message = "Failed to initiate payment"


class PaymentStatusUnavailable(PaymentError):
    kind = "payment_status_unavailable"
    http_status = 503
    default_message = "Failed to verify payment status"


class PaymentCaptureFailed(PaymentError):
    kind = "payment_capture_failed"
    http_status = 502
    default_message = "Failed to capture payment"


class UnknownPayment(PaymentError):
    kind = "unknown_payment"
    http_status = 404
    default_message = "Payment not found"


class InvalidAmount(PaymentError):
    kind = "invalid_amount"
    http_status = 400
    default_message = "Amount must be a positive number"


class InvalidStatusTransition(PaymentError):
    kind = "invalid_status_transition"
    http_status = 409
    default_message = "Payment cannot change status"

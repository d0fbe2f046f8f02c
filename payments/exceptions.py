class PaymentError(Exception):
    """Error surfaced to API clients as ``{"success": false, "error": ...}``."""

    status_code = 400

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def as_dict(self) -> dict:
        return {"success": False, "error": self.message, **self.extra}


class ValidationFailed(PaymentError): pass
class InvalidOrderState(PaymentError): pass
class AmountMismatch(PaymentError): pass
class AlreadyPaid(PaymentError): pass
class UnsupportedPaymentMethod(PaymentError): pass


class GatewayRejected(PaymentError):
    """The gateway answered with a nonzero return code."""


class OrderNotFound(PaymentError):
    status_code = 404


class PaymentNotFound(PaymentError):
    status_code = 404


class PaymentInProgress(PaymentError):
    status_code = 409

    def __init__(self, message: str, existing_payment_id):
        super().__init__(message, existingPaymentId=str(existing_payment_id))
        self.existing_payment_id = existing_payment_id


class NotCompleted(PaymentError):
    status_code = 409


class GatewayUnavailable(PaymentError):
    status_code = 500


class StoreUpdateFailed(PaymentError):
    status_code = 500


class ServiceMisconfigured(PaymentError):
    status_code = 503

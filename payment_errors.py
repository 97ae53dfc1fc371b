"""
Error taxonomy for payment order processing
Business outcomes (underpaid, duplicate, rejected) are NOT errors - see ReconciliationResult
"""

from typing import Optional


class PaymentError(Exception):
    """Base class for payment order errors"""

    code = 'PAYMENT_ERROR'

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ConfigurationError(PaymentError):
    """Startup-time misconfiguration; the service must not accept traffic"""

    code = 'CONFIGURATION_ERROR'


class OrderValidationError(PaymentError):
    """Order creation input is invalid"""

    code = 'VALIDATION_ERROR'


class UnsupportedCurrency(OrderValidationError):
    """Currency/network pair is not in the supported enumeration"""

    code = 'UNSUPPORTED_CURRENCY'


class PriceUnavailable(PaymentError):
    """Could not price the order in the requested currency"""

    code = 'PRICE_UNAVAILABLE'


class AllocationFailed(PaymentError):
    """Deposit address could not be obtained from the custody provider"""

    code = 'ALLOCATION_FAILED'


class SubscriptionConflict(PaymentError):
    """Notification subscription could not be ensured with the provider"""

    code = 'SUBSCRIPTION_FAILED'


class AuthenticationFailed(PaymentError):
    """Inbound webhook carried a missing or wrong shared-secret token"""

    code = 'AUTHENTICATION_FAILED'


class MalformedPayload(PaymentError):
    """Inbound webhook body is not a valid payment notification"""

    code = 'MALFORMED_PAYLOAD'


class OrderNotFound(PaymentError):
    """No order matches the correlation id or (address, network)"""

    code = 'ORDER_NOT_FOUND'


class ConcurrentUpdateConflict(PaymentError):
    """Compare-and-swap lost against another writer; retried internally"""

    code = 'CONCURRENT_UPDATE'


class Expired(PaymentError):
    """Order passed its expiry and can no longer accept payments"""

    code = 'ORDER_EXPIRED'


class OrderIntegrityError(PaymentError):
    """Stored order record violates its invariants"""

    code = 'ORDER_INTEGRITY'

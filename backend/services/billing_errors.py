"""Billing error taxonomy.

Request-path errors carry the HTTP status and error_code the routes surface.
PaymentCollectionFailed is non-fatal: the upgrade flow catches it and returns
the hosted invoice link instead of failing the request.
"""
from typing import Optional


class BillingError(Exception):
    status_code = 500
    error_code = "BILLING_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class Unauthenticated(BillingError):
    status_code = 401
    error_code = "UNAUTHENTICATED"


class NotFound(BillingError):
    status_code = 404
    error_code = "NOT_FOUND"


class InvalidRequest(BillingError):
    status_code = 400
    error_code = "INVALID_REQUEST"


class ConfigurationError(BillingError):
    status_code = 500
    error_code = "PAYMENT_CONFIGURATION_ERROR"


class ProviderError(BillingError):
    """Stripe API failure; message is the provider's own."""
    status_code = 502
    error_code = "PROVIDER_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None, provider_code: Optional[str] = None):
        super().__init__(message, error_code)
        self.provider_code = provider_code


class PaymentCollectionFailed(BillingError):
    status_code = 402
    error_code = "PAYMENT_COLLECTION_FAILED"

    def __init__(self, message: str, invoice_id: Optional[str] = None):
        super().__init__(message)
        self.invoice_id = invoice_id


class WebhookSignatureError(BillingError):
    """The only webhook failure that must not be acknowledged with a 2xx."""
    status_code = 400
    error_code = "INVALID_SIGNATURE"


class DowngradeSchedulingError(BillingError):
    """No resolvable period boundary; the engine refuses to guess an effective date."""
    status_code = 500
    error_code = "DOWNGRADE_SCHEDULING_FAILED"

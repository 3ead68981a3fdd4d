"""Stripe gateway - the one place that talks to the billing provider.

The key mode (test / live) is decided once, when StripeSettings is built at
process start, and travels with the BillingProvider instance. Nothing else in
the engine reads STRIPE_* variables.

Every SDK error is translated to ProviderError here so callers deal with a
single taxonomy, and every result comes back as a plain dict. Calls are
sequential and carry the configured HTTP timeout.
"""
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import stripe

from services.billing_errors import (
    ConfigurationError,
    PaymentCollectionFailed,
    ProviderError,
    WebhookSignatureError,
)
from services.plan_registry import StripeMode, get_stripe_price_mappings

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT_SECONDS = 20
DEFAULT_MAX_NETWORK_RETRIES = 2


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class StripeSettings:
    mode: StripeMode
    secret_key: str
    webhook_secret: str
    price_table: Dict[str, Dict[str, str]] = field(default_factory=dict)
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    max_network_retries: int = DEFAULT_MAX_NETWORK_RETRIES

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "StripeSettings":
        """
        Resolve mode, keys and the price table from the environment.

        STRIPE_USE_TEST_MODE selects the mode. A test-mode toggle paired with a
        key that is not sk_test_ is refused: the settings come back without a
        secret key and every billing call fails with ConfigurationError.
        """
        env = os.environ if environ is None else environ
        use_test_mode = _truthy(env.get("STRIPE_USE_TEST_MODE"))
        mode = StripeMode.TEST if use_test_mode else StripeMode.LIVE

        if use_test_mode:
            secret_key = env.get("STRIPE_SECRET_KEY_TEST") or env.get("STRIPE_SECRET_KEY") or ""
            webhook_secret = env.get("STRIPE_WEBHOOK_SECRET_TEST") or env.get("STRIPE_WEBHOOK_SECRET") or ""
        else:
            secret_key = env.get("STRIPE_SECRET_KEY_LIVE") or env.get("STRIPE_SECRET_KEY") or ""
            webhook_secret = env.get("STRIPE_WEBHOOK_SECRET_LIVE") or env.get("STRIPE_WEBHOOK_SECRET") or ""
        secret_key = secret_key.strip()

        if secret_key and use_test_mode and not secret_key.startswith("sk_test_"):
            logger.error(
                "STRIPE_USE_TEST_MODE is set but the secret key is not a test key. Billing disabled."
            )
            secret_key = ""

        return cls(
            mode=mode,
            secret_key=secret_key,
            webhook_secret=webhook_secret.strip(),
            price_table=get_stripe_price_mappings(mode, env),
            http_timeout_seconds=float(env.get("STRIPE_HTTP_TIMEOUT_SECONDS") or DEFAULT_HTTP_TIMEOUT_SECONDS),
            max_network_retries=int(env.get("STRIPE_MAX_NETWORK_RETRIES") or DEFAULT_MAX_NETWORK_RETRIES),
        )


def _as_dict(result: Any) -> Any:
    """StripeObject is not a dict; hand the engine plain (nested) dicts."""
    if isinstance(result, stripe.StripeObject):
        return result.to_dict()
    return result


def _provider_error(operation: str, err: Exception) -> ProviderError:
    message = getattr(err, "user_message", None) or str(err) or "Stripe request failed"
    return ProviderError(message, provider_code=getattr(err, "code", None))


class BillingProvider:
    """Thin wrapper over stripe.StripeClient scoped to one key mode."""

    def __init__(self, settings: StripeSettings, client: Optional[stripe.StripeClient] = None):
        self.settings = settings
        self._client = client
        if self._client is None and settings.is_configured:
            self._client = stripe.StripeClient(
                settings.secret_key,
                http_client=stripe.RequestsClient(timeout=settings.http_timeout_seconds),
                max_network_retries=settings.max_network_retries,
            )

    @property
    def mode(self) -> StripeMode:
        return self.settings.mode

    @property
    def price_table(self) -> Dict[str, Dict[str, str]]:
        return self.settings.price_table

    def _require_client(self) -> stripe.StripeClient:
        if self._client is None:
            raise ConfigurationError("Payment system not configured")
        return self._client

    def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return _as_dict(fn(*args, **kwargs))
        except stripe.StripeError as e:
            logger.error("Stripe %s failed: %s", operation, e)
            raise _provider_error(operation, e)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def retrieve_subscription(self, subscription_id: str, expand: Optional[List[str]] = None) -> Dict[str, Any]:
        client = self._require_client()
        params = {"expand": expand} if expand else {}
        return self._call("subscriptions.retrieve", client.subscriptions.retrieve, subscription_id, params=params)

    def update_subscription(self, subscription_id: str, **params) -> Dict[str, Any]:
        client = self._require_client()
        return self._call("subscriptions.update", client.subscriptions.update, subscription_id, params=params)

    # -------------------------------------------------------------------------
    # Subscription schedules
    # -------------------------------------------------------------------------

    def create_schedule_from_subscription(self, subscription_id: str) -> Dict[str, Any]:
        client = self._require_client()
        return self._call(
            "subscription_schedules.create",
            client.subscription_schedules.create,
            params={"from_subscription": subscription_id},
        )

    def retrieve_schedule(self, schedule_id: str) -> Dict[str, Any]:
        client = self._require_client()
        return self._call("subscription_schedules.retrieve", client.subscription_schedules.retrieve, schedule_id)

    def update_schedule(self, schedule_id: str, **params) -> Dict[str, Any]:
        client = self._require_client()
        return self._call(
            "subscription_schedules.update", client.subscription_schedules.update, schedule_id, params=params
        )

    def release_schedule(self, schedule_id: str) -> Dict[str, Any]:
        client = self._require_client()
        return self._call("subscription_schedules.release", client.subscription_schedules.release, schedule_id)

    # -------------------------------------------------------------------------
    # Prices
    # -------------------------------------------------------------------------

    def retrieve_price(self, price_id: str) -> Dict[str, Any]:
        client = self._require_client()
        return self._call("prices.retrieve", client.prices.retrieve, price_id)

    def create_price(self, idempotency_key: Optional[str] = None, **params) -> Dict[str, Any]:
        client = self._require_client()
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        return self._call("prices.create", client.prices.create, params=params, options=options)

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    def create_invoice(self, **params) -> Dict[str, Any]:
        client = self._require_client()
        return self._call("invoices.create", client.invoices.create, params=params)

    def finalize_invoice(self, invoice_id: str) -> Dict[str, Any]:
        client = self._require_client()
        return self._call("invoices.finalize_invoice", client.invoices.finalize_invoice, invoice_id)

    def pay_invoice(self, invoice_id: str) -> Dict[str, Any]:
        """Attempt collection. A declined or failed attempt is PaymentCollectionFailed, not ProviderError."""
        client = self._require_client()
        try:
            return _as_dict(client.invoices.pay(invoice_id))
        except stripe.StripeError as e:
            logger.warning("Stripe invoice %s payment attempt failed: %s", invoice_id, e)
            raise PaymentCollectionFailed(
                getattr(e, "user_message", None) or str(e) or "Payment failed",
                invoice_id=invoice_id,
            )

    def preview_invoice(self, **params) -> Dict[str, Any]:
        client = self._require_client()
        return self._call("invoices.create_preview", client.invoices.create_preview, params=params)

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header and return the event as a plain dict.

        Raises WebhookSignatureError on a bad signature, a missing header, a
        missing webhook secret or an unparseable payload.
        """
        if not self.settings.webhook_secret:
            raise WebhookSignatureError("Stripe webhook secret is not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self.settings.webhook_secret)
            return json.loads(payload)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            raise WebhookSignatureError(f"Webhook Error: {e}")
        except ValueError as e:
            logger.error("Webhook payload could not be parsed: %s", e)
            raise WebhookSignatureError(f"Invalid payload: {e}")


# =============================================================================
# Stripe object helpers
# =============================================================================

def ts_to_datetime(ts: Optional[int]) -> Optional[datetime]:
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def object_id(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None) if value else None


def subscription_items(subscription: Dict[str, Any]) -> List[Dict[str, Any]]:
    return (subscription.get("items") or {}).get("data") or []


def first_item(subscription: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    items = subscription_items(subscription)
    return items[0] if items else None


def item_price_id(item: Optional[Dict[str, Any]]) -> Optional[str]:
    return object_id(item.get("price")) if item else None


def item_interval(item: Optional[Dict[str, Any]]) -> str:
    price = (item or {}).get("price")
    if isinstance(price, dict):
        return (price.get("recurring") or {}).get("interval") or "month"
    return "month"


def subscription_period_start(subscription: Dict[str, Any]) -> Optional[int]:
    """Newer API versions carry the period on the item rather than the subscription."""
    return subscription.get("current_period_start") or (first_item(subscription) or {}).get("current_period_start")


def subscription_period_end(subscription: Dict[str, Any]) -> Optional[int]:
    return subscription.get("current_period_end") or (first_item(subscription) or {}).get("current_period_end")

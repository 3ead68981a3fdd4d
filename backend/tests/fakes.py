"""
In-memory stand-ins for the Mongo database and the Stripe billing provider.

FakeDatabase covers the subset of the motor API the billing engine uses:
find_one / find (sort, limit, to_list) / insert_one / update_one with
$set, $setOnInsert, $inc, $unset and upsert / find_one_and_update, and the
query operators $ne, $lt, $lte, $gt, $gte, $in. Unique keys raise pymongo's
DuplicateKeyError like a unique index would.

FakeBillingProvider keeps subscriptions, schedules, prices and invoices in
dicts and records every call, so tests can assert on exactly what was sent
to Stripe. Webhook signature verification is inherited from the real
BillingProvider.
"""
import asyncio
import copy
import hashlib
import hmac
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from services.billing_errors import PaymentCollectionFailed, ProviderError
from services.plan_registry import StripeMode
from services.stripe_gateway import BillingProvider, StripeSettings

_MISSING = object()


# =============================================================================
# Mongo
# =============================================================================

def _get_path(doc: Dict[str, Any], path: str):
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.setdefault(part, {})
    doc[parts[-1]] = copy.deepcopy(value)


def _matches_condition(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        present = None if value is _MISSING else value
        for op, operand in condition.items():
            if op == "$ne":
                if present == operand:
                    return False
            elif op == "$in":
                if present not in operand:
                    return False
            elif op in ("$lt", "$lte", "$gt", "$gte"):
                if present is None:
                    return False
                if op == "$lt" and not present < operand:
                    return False
                if op == "$lte" and not present <= operand:
                    return False
                if op == "$gt" and not present > operand:
                    return False
                if op == "$gte" and not present >= operand:
                    return False
            else:
                raise NotImplementedError(f"FakeCollection does not support {op}")
        return True
    if value is _MISSING:
        return condition is None
    return value == condition


def _matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    return all(_matches_condition(_get_path(doc, key), cond) for key, cond in (query or {}).items())


def _project(doc: Dict[str, Any], projection: Optional[Dict[str, int]]) -> Dict[str, Any]:
    result = copy.deepcopy(doc)
    if not projection:
        return result
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        result = {k: result[k] for k in included if k in result}
        if projection.get("_id", 1):
            result["_id"] = doc.get("_id")
    elif projection.get("_id") == 0:
        result.pop("_id", None)
    return result


class _Result:
    def __init__(self, matched_count=0, modified_count=0, upserted_id=None, inserted_id=None):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.upserted_id = upserted_id
        self.inserted_id = inserted_id


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs.sort(
            key=lambda d: (d.get(key) is None, d.get(key)),
            reverse=direction == -1,
        )
        return self

    def limit(self, n: int):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length: Optional[int] = None):
        return self._docs if length is None else self._docs[:length]


class FakeCollection:
    def __init__(self, name: str, unique_keys=()):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        self.unique_keys = tuple(unique_keys)

    # Reads yield to the loop so concurrent callers interleave like real I/O
    async def find_one(self, query=None, projection=None, **kw):
        await asyncio.sleep(0)
        for doc in self.docs:
            if _matches(doc, query):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None, **kw):
        return FakeCursor([_project(d, projection) for d in self.docs if _matches(d, query)])

    async def count_documents(self, query=None):
        return len([d for d in self.docs if _matches(d, query)])

    def _check_unique(self, candidate: Dict[str, Any], ignore: Optional[Dict[str, Any]] = None):
        for key in ("_id",) + self.unique_keys:
            value = candidate.get(key)
            if value is None:
                continue
            for doc in self.docs:
                if doc is not ignore and doc.get(key) == value:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {key}")

    async def insert_one(self, document: Dict[str, Any], **kw):
        doc = copy.deepcopy(document)
        doc.setdefault("_id", str(uuid.uuid4()))
        self._check_unique(doc)
        self.docs.append(doc)
        return _Result(inserted_id=doc["_id"])

    def _apply(self, doc: Dict[str, Any], update: Dict[str, Any], inserting: bool) -> None:
        for key, value in (update.get("$set") or {}).items():
            _set_path(doc, key, value)
        if inserting:
            for key, value in (update.get("$setOnInsert") or {}).items():
                _set_path(doc, key, value)
        for key, value in (update.get("$inc") or {}).items():
            current = _get_path(doc, key)
            _set_path(doc, key, (0 if current is _MISSING else current) + value)
        for key in (update.get("$unset") or {}):
            parts = key.split(".")
            target = doc
            for part in parts[:-1]:
                target = target.get(part, {})
            target.pop(parts[-1], None)

    def _new_from_query(self, query: Dict[str, Any]) -> Dict[str, Any]:
        return {
            k: copy.deepcopy(v)
            for k, v in (query or {}).items()
            if not (isinstance(v, dict) and any(op.startswith("$") for op in v))
        }

    async def update_one(self, query, update, upsert: bool = False, **kw):
        for doc in self.docs:
            if _matches(doc, query):
                self._apply(doc, update, inserting=False)
                self._check_unique(doc, ignore=doc)
                return _Result(matched_count=1, modified_count=1)
        if not upsert:
            return _Result()
        doc = self._new_from_query(query)
        self._apply(doc, update, inserting=True)
        doc.setdefault("_id", str(uuid.uuid4()))
        self._check_unique(doc)
        self.docs.append(doc)
        return _Result(upserted_id=doc["_id"])

    async def find_one_and_update(self, query, update, upsert=False, return_document=ReturnDocument.BEFORE, **kw):
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                self._apply(doc, update, inserting=False)
                return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else before
        if not upsert:
            return None
        doc = self._new_from_query(query)
        self._apply(doc, update, inserting=True)
        doc.setdefault("_id", str(uuid.uuid4()))
        self.docs.append(doc)
        return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else None


class FakeDatabase:
    UNIQUE_KEYS = {
        "users": ("user_id",),
        "stripe_events": ("event_id",),
    }

    def __init__(self):
        self._collections: Dict[str, FakeCollection] = {}

    def __getattr__(self, name: str) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self._collections:
            self._collections[name] = FakeCollection(name, self.UNIQUE_KEYS.get(name, ()))
        return self._collections[name]


# =============================================================================
# Stripe
# =============================================================================

PRICE_TABLE = {
    "Caption": {"monthly": "price_caption_monthly", "annually": "price_caption_annually"},
    "Pro": {"monthly": "price_pro_monthly", "annually": "price_pro_annually"},
    "Elite": {"monthly": "price_elite_monthly", "annually": "price_elite_annually"},
    "OnlyFansStudio": {"monthly": "price_ofs_monthly", "annually": "price_ofs_annually"},
    "Agency": {"monthly": "price_agency_monthly", "annually": "price_agency_annually"},
}

WEBHOOK_SECRET = "whsec_test_secret"

PERIOD_START = int(datetime(2026, 10, 1, tzinfo=timezone.utc).timestamp())
PERIOD_END = int(datetime(2026, 11, 1, tzinfo=timezone.utc).timestamp())


def make_settings(**overrides) -> StripeSettings:
    values = dict(
        mode=StripeMode.TEST,
        secret_key="sk_test_fake",
        webhook_secret=WEBHOOK_SECRET,
        price_table=copy.deepcopy(PRICE_TABLE),
    )
    values.update(overrides)
    return StripeSettings(**values)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    ts = timestamp or int(time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def _seed_prices() -> Dict[str, Dict[str, Any]]:
    amounts = {"Caption": 900, "Pro": 2900, "Elite": 5900, "OnlyFansStudio": 5900, "Agency": 9900}
    prices = {}
    for plan, cycles in PRICE_TABLE.items():
        for cycle, price_id in cycles.items():
            monthly = amounts[plan]
            prices[price_id] = {
                "id": price_id,
                "object": "price",
                "product": f"prod_{plan.lower()}",
                "currency": "usd",
                "unit_amount": monthly if cycle == "monthly" else monthly * 12,
                "recurring": {"interval": "month" if cycle == "monthly" else "year"},
            }
    return prices


class FakeBillingProvider(BillingProvider):
    def __init__(self, settings: Optional[StripeSettings] = None):
        super().__init__(settings or make_settings(), client=MagicMock())
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.schedules: Dict[str, Dict[str, Any]] = {}
        self.prices: Dict[str, Dict[str, Any]] = _seed_prices()
        self.invoices: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self._idempotent_prices: Dict[str, str] = {}
        self.invoice_amount_due = 1500
        self.fail_payment = False
        self.fail_price_create = False
        self.honour_idempotency = True

    def _record(self, name: str, *args, **params):
        self.calls.append((name, args, params))

    def calls_named(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    # -------------------------------------------------------------------------
    # Fixtures
    # -------------------------------------------------------------------------

    def add_subscription(
        self,
        subscription_id: str = "sub_test_1",
        customer: str = "cus_test_1",
        price_id: str = "price_pro_monthly",
        status: str = "active",
        metadata: Optional[Dict[str, str]] = None,
        period_start: Optional[int] = PERIOD_START,
        period_end: Optional[int] = PERIOD_END,
        cancel_at_period_end: bool = False,
    ) -> Dict[str, Any]:
        subscription = {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "schedule": None,
            "metadata": metadata or {},
            "current_period_start": period_start,
            "current_period_end": period_end,
            "trial_end": None,
            "items": {
                "data": [{
                    "id": f"si_{subscription_id}",
                    "quantity": 1,
                    "price": copy.deepcopy(self.prices[price_id]),
                }]
            },
        }
        self.subscriptions[subscription_id] = subscription
        return copy.deepcopy(subscription)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def _subscription(self, subscription_id: str) -> Dict[str, Any]:
        if subscription_id not in self.subscriptions:
            raise ProviderError(f"No such subscription: '{subscription_id}'", provider_code="resource_missing")
        return self.subscriptions[subscription_id]

    def retrieve_subscription(self, subscription_id, expand=None):
        self._record("retrieve_subscription", subscription_id, expand=expand)
        return copy.deepcopy(self._subscription(subscription_id))

    def update_subscription(self, subscription_id, **params):
        self._record("update_subscription", subscription_id, **params)
        subscription = self._subscription(subscription_id)
        if "cancel_at_period_end" in params:
            subscription["cancel_at_period_end"] = params["cancel_at_period_end"]
        if "metadata" in params:
            subscription["metadata"] = dict(params["metadata"])
        for change in params.get("items") or []:
            for item in subscription["items"]["data"]:
                if item["id"] == change["id"]:
                    item["price"] = copy.deepcopy(self.prices[change["price"]])
        if params.get("billing_cycle_anchor") == "now":
            now = datetime.now(timezone.utc)
            interval = subscription["items"]["data"][0]["price"]["recurring"]["interval"]
            length = timedelta(days=365) if interval == "year" else timedelta(days=30)
            subscription["current_period_start"] = int(now.timestamp())
            subscription["current_period_end"] = int((now + length).timestamp())
        return copy.deepcopy(subscription)

    # -------------------------------------------------------------------------
    # Subscription schedules
    # -------------------------------------------------------------------------

    def create_schedule_from_subscription(self, subscription_id):
        self._record("create_schedule_from_subscription", subscription_id)
        subscription = self._subscription(subscription_id)
        schedule_id = f"sub_sched_{len(self.schedules) + 1}"
        phases = []
        if subscription.get("current_period_end"):
            phases.append({
                "start_date": subscription.get("current_period_start"),
                "end_date": subscription.get("current_period_end"),
                "items": [
                    {"price": item["price"]["id"], "quantity": item.get("quantity", 1)}
                    for item in subscription["items"]["data"]
                ],
            })
        self.schedules[schedule_id] = {
            "id": schedule_id,
            "object": "subscription_schedule",
            "status": "active",
            "subscription": subscription_id,
            "end_behavior": "release",
            "phases": phases,
        }
        subscription["schedule"] = schedule_id
        return copy.deepcopy(self.schedules[schedule_id])

    def retrieve_schedule(self, schedule_id):
        self._record("retrieve_schedule", schedule_id)
        return copy.deepcopy(self.schedules[schedule_id])

    def update_schedule(self, schedule_id, **params):
        self._record("update_schedule", schedule_id, **params)
        schedule = self.schedules[schedule_id]
        schedule.update(copy.deepcopy(params))
        return copy.deepcopy(schedule)

    def release_schedule(self, schedule_id):
        self._record("release_schedule", schedule_id)
        schedule = self.schedules[schedule_id]
        schedule["status"] = "released"
        subscription = self.subscriptions.get(schedule["subscription"])
        if subscription is not None:
            subscription["schedule"] = None
        return copy.deepcopy(schedule)

    # -------------------------------------------------------------------------
    # Prices
    # -------------------------------------------------------------------------

    def retrieve_price(self, price_id):
        self._record("retrieve_price", price_id)
        if price_id not in self.prices:
            raise ProviderError(f"No such price: '{price_id}'", provider_code="resource_missing")
        return copy.deepcopy(self.prices[price_id])

    def create_price(self, idempotency_key=None, **params):
        self._record("create_price", idempotency_key=idempotency_key, **params)
        if self.fail_price_create:
            raise ProviderError("Stripe is unavailable", provider_code="api_error")
        if self.honour_idempotency and idempotency_key in self._idempotent_prices:
            return copy.deepcopy(self.prices[self._idempotent_prices[idempotency_key]])
        price_id = f"price_override_{uuid.uuid4().hex[:12]}"
        self.prices[price_id] = {"id": price_id, "object": "price", **copy.deepcopy(params)}
        if idempotency_key:
            self._idempotent_prices[idempotency_key] = price_id
        return copy.deepcopy(self.prices[price_id])

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    def create_invoice(self, **params):
        self._record("create_invoice", **params)
        invoice_id = f"in_test_{len(self.invoices) + 1}"
        self.invoices[invoice_id] = {
            "id": invoice_id,
            "object": "invoice",
            "status": "draft",
            "customer": params.get("customer"),
            "subscription": params.get("subscription"),
            "amount_due": self.invoice_amount_due,
            "amount_paid": 0,
            "currency": "usd",
            "hosted_invoice_url": f"https://invoice.stripe.test/{invoice_id}",
        }
        return copy.deepcopy(self.invoices[invoice_id])

    def finalize_invoice(self, invoice_id):
        self._record("finalize_invoice", invoice_id)
        invoice = self.invoices[invoice_id]
        invoice["status"] = "open" if invoice["amount_due"] > 0 else "paid"
        return copy.deepcopy(invoice)

    def pay_invoice(self, invoice_id):
        self._record("pay_invoice", invoice_id)
        if self.fail_payment:
            raise PaymentCollectionFailed("Your card was declined.", invoice_id=invoice_id)
        invoice = self.invoices[invoice_id]
        invoice["status"] = "paid"
        invoice["amount_paid"] = invoice["amount_due"]
        return copy.deepcopy(invoice)

    def preview_invoice(self, **params):
        self._record("preview_invoice", **params)
        return {
            "amount_due": self.invoice_amount_due,
            "currency": "usd",
            "lines": {"data": [
                {"description": "Unused time on Pro", "amount": -1450, "proration": True},
                {"description": "Remaining time on Elite", "amount": 2950, "proration": True},
            ]},
        }


def auth_headers(user_id: str, role: str = "ROLE_USER") -> Dict[str, str]:
    from auth import create_access_token

    token = create_access_token({"user_id": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}

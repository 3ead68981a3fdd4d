"""FastAPI dependencies for the billing engine.

The BillingProvider is built once in the server lifespan (key mode decided
at process start) and read from app.state; tests swap these out through
app.dependency_overrides.
"""
from fastapi import Depends, Request

from database import database
from services.plan_change_service import PlanChangeOrchestrator
from services.stripe_gateway import BillingProvider, StripeSettings
from services.stripe_webhook_service import StripeWebhookService


def get_db():
    return database.get_db()


def get_billing_provider(request: Request) -> BillingProvider:
    provider = getattr(request.app.state, "billing_provider", None)
    if provider is None:
        provider = BillingProvider(StripeSettings.from_env())
        request.app.state.billing_provider = provider
    return provider


def get_plan_change_orchestrator(
    provider: BillingProvider = Depends(get_billing_provider),
    db=Depends(get_db),
) -> PlanChangeOrchestrator:
    return PlanChangeOrchestrator(db, provider)


def get_webhook_service(
    provider: BillingProvider = Depends(get_billing_provider),
    db=Depends(get_db),
) -> StripeWebhookService:
    return StripeWebhookService(provider, db)

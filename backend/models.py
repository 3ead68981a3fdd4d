from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    ROLE_USER = "ROLE_USER"
    ROLE_ADMIN = "ROLE_ADMIN"
    ROLE_SYSTEM = "ROLE_SYSTEM"

class AuditAction(str, Enum):
    # Plan changes (synchronous path)
    PLAN_UPGRADED = "PLAN_UPGRADED"
    DOWNGRADE_SCHEDULED = "DOWNGRADE_SCHEDULED"
    CANCELLATION_REQUESTED = "CANCELLATION_REQUESTED"
    CANCELLATION_REVERSED = "CANCELLATION_REVERSED"

    # Price overrides
    PRICE_OVERRIDE_CREATED = "PRICE_OVERRIDE_CREATED"

    # Webhooks (asynchronous path)
    STRIPE_EVENT_PROCESSED = "STRIPE_EVENT_PROCESSED"
    STRIPE_EVENT_FAILED = "STRIPE_EVENT_FAILED"

    # Side effects
    REFERRAL_REWARD_GRANTED = "REFERRAL_REWARD_GRANTED"

    # Admin
    ADMIN_BILLING_SYNC = "ADMIN_BILLING_SYNC"

class PlanChangeSource(str, Enum):
    STRIPE_WEBHOOK = "stripe_webhook"
    SUBSCRIPTION_CHANGE_API = "subscription_change_api"
    SCHEDULED_DOWNGRADE = "scheduled_downgrade"
    ADMIN_OVERRIDE = "admin_override"
    UNKNOWN = "unknown"

class StripeEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"

class ReferralRewardStatus(str, Enum):
    PENDING = "pending"
    GRANTED = "granted"

# ============================================================================
# DOCUMENTS
# ============================================================================

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")
    
    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_utcnow)

class PriceOverride(BaseModel):
    """Provider price created to honour a fixed annual total. Immutable once stored."""
    model_config = ConfigDict(extra="ignore")

    mode: str
    plan_name: str
    cycle: str = "annually"
    price_id: str
    unit_amount: int
    currency: str
    created_at: datetime = Field(default_factory=_utcnow)

class PlanChangeEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    from_plan: Optional[str] = None
    to_plan: str
    changed_at: datetime
    source: PlanChangeSource = PlanChangeSource.UNKNOWN
    stripe_session_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

class UserNotification(BaseModel):
    model_config = ConfigDict(extra="ignore")

    notification_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    message_id: str
    text: str
    read: bool = False
    created_at: datetime = Field(default_factory=_utcnow)

class AdminAlert(BaseModel):
    model_config = ConfigDict(extra="ignore")

    alert_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    alert_type: str
    user_id: Optional[str] = None
    message: str
    metadata: Optional[Dict[str, Any]] = None
    resolved: bool = False
    created_at: datetime = Field(default_factory=_utcnow)

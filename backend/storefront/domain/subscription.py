"""
Subscription Domain Models

Domain models for subscription reconciliation following Clean Architecture.
Enums, DTOs, and domain entities for the subscription bounded context.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field


logger = logging.getLogger(__name__)


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    PENDING = "pending"
    PROCESSING = "processing"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Nothing ever moves from ACTIVE back to PENDING.
ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, frozenset] = {
    SubscriptionStatus.PENDING: frozenset({
        SubscriptionStatus.PROCESSING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
    }),
    SubscriptionStatus.PROCESSING: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
    }),
    SubscriptionStatus.ACTIVE: frozenset({
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.REFUNDED,
    }),
    SubscriptionStatus.PAUSED: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.REFUNDED,
    }),
    SubscriptionStatus.CANCELLED: frozenset(),
    SubscriptionStatus.REFUNDED: frozenset(),
}

REUSABLE_STATUSES = frozenset({SubscriptionStatus.PENDING, SubscriptionStatus.PROCESSING})


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    """Check whether the lifecycle allows moving from ``current`` to ``target``."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class SubscriptionType(str, Enum):
    """Billing frequency of a subscription."""
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"

    @classmethod
    def parse(cls, value: Any) -> "SubscriptionType":
        """Parse a stored type, defaulting unknown values to monthly."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            logger.warning(f"Unknown subscription type {value!r}, defaulting to monthly")
            return cls.MONTHLY


class ReferenceKind(str, Enum):
    """Intent that an external reference is generated for."""
    NEW = "new"
    REACTIVATION = "reactivation"
    RENEWAL = "renewal"


class BillingStatus(str, Enum):
    """Outcome of a billing history entry."""
    COMPLETED = "completed"
    FAILED = "failed"


class MatchConfidence(str, Enum):
    """Confidence band of a reconciliation match."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def is_auto_applicable(self) -> bool:
        """Only high and medium matches may be activated without corroboration."""
        return self in (MatchConfidence.HIGH, MatchConfidence.MEDIUM)


class ActivationSource(str, Enum):
    """Trigger that requested an activation."""
    WEBHOOK = "webhook"
    RETURN_FLOW = "verify-return"
    SCHEDULED_SYNC = "scheduled-sync"
    REACTIVATION = "reactivation"


class ActivationOutcome(str, Enum):
    """Structured result of an activation attempt."""
    ACTIVATED = "activated"
    ALREADY_ACTIVE = "already_active"
    PAYMENT_NOT_APPROVED = "payment_not_approved"
    NOT_FOUND = "not_found"
    LOW_CONFIDENCE = "low_confidence"
    DUPLICATE_DETECTED = "duplicate_detected"
    LOCK_TIMEOUT = "lock_timeout"
    INELIGIBLE = "ineligible"


class ProviderObjectKind(str, Enum):
    """Kind of provider object an identifier refers to."""
    PAYMENT = "payment"
    PREAPPROVAL = "preapproval"


class AlertSeverity(str, Enum):
    """Severity of an operational alert."""
    CRITICAL = "critical"
    MEDIUM = "medium"


# =============================================================================
# Domain Entities
# =============================================================================

class Subscription(BaseModel):
    """Core subscription domain entity."""
    id: Optional[str] = None
    user_id: str
    product_id: str
    product_name: str = ""
    subscription_type: SubscriptionType = SubscriptionType.MONTHLY
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    external_reference: str
    provider_subscription_id: Optional[str] = None
    base_price: Decimal = Decimal("0")
    discount_percentage: Decimal = Decimal("0")
    discounted_price: Optional[Decimal] = None
    charges_made: int = 0
    activated_at: Optional[datetime] = None
    last_billing_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    customer_data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def customer_email(self) -> Optional[str]:
        """Email captured in the customer snapshot at checkout."""
        email = self.customer_data.get("email")
        return email.strip().lower() if isinstance(email, str) and email.strip() else None

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


class BillingHistoryEntry(BaseModel):
    """Append-only record of one successful (or failed) charge."""
    id: Optional[str] = None
    subscription_id: str
    user_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: BillingStatus = BillingStatus.COMPLETED
    provider_payment_id: Optional[str] = None
    period_start: datetime
    period_end: datetime
    created_at: Optional[datetime] = None


class AuditLogEntry(BaseModel):
    """Append-only reconciliation audit event."""
    event_type: str
    source: str
    success: bool
    duration_ms: Optional[int] = None
    subscription_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


# =============================================================================
# Query / Command Value Objects
# =============================================================================

@dataclass
class SubscriptionQuery:
    """
    Filter set understood by every SubscriptionStore.

    All populated fields are combined with AND. Results are ordered by
    ``created_at`` descending (most recent first).
    """
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    statuses: Optional[List[SubscriptionStatus]] = None
    customer_email: Optional[str] = None
    metadata_contains: Optional[Dict[str, Any]] = None
    provider_subscription_id: Optional[str] = None
    created_after: Optional[datetime] = None
    limit: int = 50


@dataclass
class ActivationChanges:
    """Field changes written by the activation transition."""
    activated_at: datetime
    last_billing_date: datetime
    next_billing_date: datetime
    metadata: Dict[str, Any]
    provider_subscription_id: Optional[str] = None
    billing_entry: Optional[BillingHistoryEntry] = None


class MatchCriteria(BaseModel):
    """Partial signals used to locate a subscription."""
    external_reference: Optional[str] = None
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    payer_email: Optional[str] = None
    collection_id: Optional[str] = None
    payment_id: Optional[str] = None
    preference_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None


@dataclass
class MatchResult:
    """Best match returned by the reconciliation matcher."""
    found: bool
    subscription: Optional[Subscription] = None
    matched_criteria: List[str] = field(default_factory=list)
    confidence: MatchConfidence = MatchConfidence.LOW
    score: int = 0
    strategy: Optional[str] = None

    @classmethod
    def not_found(cls) -> "MatchResult":
        return cls(found=False)


class ExistingSubscription(BaseModel):
    """A subscription the duplicate guard found for a checkout intent."""
    subscription_id: str
    status: SubscriptionStatus
    external_reference: str
    created_at: Optional[datetime] = None
    can_reuse: bool


class DuplicateCheckData(BaseModel):
    """Identifying attributes checked before a guarded operation runs."""
    external_reference: Optional[str] = None
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    payer_email: Optional[str] = None


T = TypeVar("T")


@dataclass
class IdempotencyConfig:
    """Options for one idempotent execution."""
    key: str
    ttl_seconds: int = 300
    max_retries: int = 3
    enable_pre_validation: bool = True
    subscription_data: DuplicateCheckData = field(default_factory=DuplicateCheckData)


@dataclass
class IdempotencyOutcome(Generic[T]):
    """Result of ``IdempotencyCoordinator.execute_with_idempotency``."""
    is_processed: bool
    result: Optional[T] = None
    lock_acquired: bool = False
    duplicate_found: bool = False
    validation_errors: List[str] = field(default_factory=list)

    @property
    def replayed(self) -> bool:
        """True when the result came from the cache instead of this call."""
        return self.is_processed and not self.lock_acquired


# =============================================================================
# Request/Response DTOs
# =============================================================================

class ActivationResult(BaseModel):
    """Structured outcome returned by every activation trigger."""
    success: bool
    outcome: ActivationOutcome
    subscription: Optional[Subscription] = None
    already_active: bool = False
    error: Optional[str] = None
    search_method: Optional[str] = None
    confidence: Optional[MatchConfidence] = None
    payment_status: Optional[str] = None


class ReturnFlowParams(BaseModel):
    """Query parameters the browser carries back from the provider checkout."""
    external_reference: Optional[str] = None
    collection_id: Optional[str] = None
    payment_id: Optional[str] = None
    status: Optional[str] = None
    collection_status: Optional[str] = None
    preference_id: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None

    def has_identifier(self) -> bool:
        return bool(self.external_reference or self.collection_id or self.payment_id)


class SweepItemResult(BaseModel):
    """Outcome for one record visited by the sync sweep."""
    success: bool
    action: str
    subscription_id: Optional[str] = None
    payment_id: Optional[str] = None
    error: Optional[str] = None


class SweepResult(BaseModel):
    """Summary of one scheduled sync sweep."""
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    results: List[SweepItemResult] = Field(default_factory=list)
    alert_severity: Optional[AlertSeverity] = None
    skipped: bool = False


class Alert(BaseModel):
    """Operational alert handed to the notification collaborator."""
    type: str
    severity: AlertSeverity
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)


class CheckoutReference(BaseModel):
    """External reference a checkout should use, plus any reusable record."""
    external_reference: str
    existing_subscription_id: Optional[str] = None
    reuse: bool = False
    already_active: bool = False

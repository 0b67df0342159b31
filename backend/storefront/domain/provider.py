"""
Payment provider payloads.

Only the fields the reconciliation engine reads are typed; everything else
the provider sends is kept as opaque extra data.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


APPROVED_STATUSES = frozenset({"approved", "authorized", "paid"})


class ProviderPayer(BaseModel):
    """Payer block of a provider payment."""
    email: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class ProviderPayment(BaseModel):
    """A payment object as returned by ``GET /v1/payments/{id}``."""
    id: str
    status: str = "unknown"
    status_detail: Optional[str] = None
    transaction_amount: Optional[Decimal] = None
    currency_id: Optional[str] = None
    payment_type_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    external_reference: Optional[str] = None
    payer: ProviderPayer = Field(default_factory=ProviderPayer)
    date_created: Optional[datetime] = None
    date_approved: Optional[datetime] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("payer", mode="before")
    @classmethod
    def default_payer(cls, value: Any) -> Any:
        return value or {}

    @property
    def is_approved(self) -> bool:
        return self.status.lower() in APPROVED_STATUSES

    @property
    def payer_email(self) -> Optional[str]:
        return self.payer.email.strip().lower() if self.payer.email else None


class ProviderPreapproval(BaseModel):
    """A recurring-billing object as returned by ``GET /preapproval/{id}``."""
    id: str
    status: str = "unknown"
    external_reference: Optional[str] = None
    payer_email: Optional[str] = None
    auto_recurring: Dict[str, Any] = Field(default_factory=dict)
    date_created: Optional[datetime] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("auto_recurring", mode="before")
    @classmethod
    def default_auto_recurring(cls, value: Any) -> Any:
        return value or {}

    @property
    def is_approved(self) -> bool:
        return self.status.lower() in APPROVED_STATUSES

"""
Pydantic schemas for the payment ledger.
"""
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, ConfigDict, Field

from app.models.payment import PaymentKind, PaymentOutcome


class LedgerEntryCreate(BaseModel):
    """A payment attempt or outcome to append to the ledger."""

    provider_payment_ref: str = Field(..., min_length=1)
    subscriber_id: uuid.UUID
    creator_id: Optional[uuid.UUID] = None
    subscription_id: Optional[uuid.UUID] = None
    stripe_invoice_id: Optional[str] = None
    kind: PaymentKind
    outcome: PaymentOutcome
    amount: int = Field(..., ge=0, description="Minor currency units")
    currency: str = Field("usd", min_length=3, max_length=3)
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    processed_at: Optional[datetime] = None


class PaymentDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    provider_payment_ref: str
    subscriber_id: uuid.UUID
    creator_id: Optional[uuid.UUID] = None
    subscription_id: Optional[uuid.UUID] = None
    kind: PaymentKind
    outcome: PaymentOutcome
    amount: int
    currency: str
    refunded_amount: int
    description: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class PaymentHistory(BaseModel):
    payments: List[PaymentDetail]
    pagination: Pagination


class RevenueSummary(BaseModel):
    """Read-only revenue projection for a creator (minor units)."""

    creator_id: uuid.UUID
    currency: str
    gross_revenue: int = 0
    refunded: int = 0
    net_revenue: int = 0
    subscription_revenue: int = 0
    tip_revenue: int = 0
    one_time_revenue: int = 0
    total_payments: int = 0
    subscription_count: int = 0
    tip_count: int = 0
    one_time_count: int = 0
    average_payment: int = 0
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class TipRequest(BaseModel):
    amount: int = Field(..., description="Tip amount in minor currency units")
    currency: Optional[str] = None
    creator_id: uuid.UUID
    message: Optional[str] = Field(None, max_length=500)


class PaymentIntentResponse(BaseModel):
    payment_id: uuid.UUID
    payment_intent_id: str
    client_secret: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(None, gt=0, description="Defaults to the full refundable amount")
    reason: Optional[str] = Field(None, max_length=500)

"""
API endpoints for tips, payment history and refunds.

Endpoints:
- POST /payments/tips - Create a payment intent for a tip
- GET /payments/history - Payment history of the user
- GET /payments/analytics - Revenue summary for the user as a creator
- POST /payments/{id}/refund - Refund (part of) a payment
"""
import uuid
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app.core.auth import get_current_user_id
from app.core.rate_limit import limiter
from app.db.base import get_db
from app.models import PaymentKind
from app.schemas import (
    PaymentDetail,
    PaymentHistory,
    PaymentIntentResponse,
    RefundRequest,
    RevenueSummary,
    TipRequest,
)
from app.services.payments import payment_service
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/tips", response_model=PaymentIntentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_tip(
    request: Request,
    body: TipRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Create a Stripe payment intent for a tip to a creator."""
    try:
        return payment_service.create_tip(user_id, body, db)
    except ValueError as e:
        logger.error(f"Error creating tip: {str(e)}")
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/history", response_model=PaymentHistory)
@limiter.limit("30/minute")
def get_payment_history(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    kind: Optional[PaymentKind] = Query(None),
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return payment_service.get_payment_history(user_id, db, page=page, limit=limit, kind=kind)


@router.get("/analytics", response_model=RevenueSummary)
@limiter.limit("30/minute")
def get_revenue_summary(
    request: Request,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Revenue received by the authenticated creator, by payment kind."""
    try:
        return payment_service.get_revenue_summary(user_id, db, start=start, end=end, currency=currency)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{payment_id}/refund", response_model=PaymentDetail)
@limiter.limit("5/minute")
def request_refund(
    request: Request,
    payment_id: uuid.UUID,
    body: RefundRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Refund a payment in full, or partially when ``amount`` is given."""
    payment = payment_service.request_refund(user_id, payment_id, body, db)
    logger.info(f"User {user_id} refunded payment {payment_id} (total refunded {payment.refunded_amount})")
    return payment

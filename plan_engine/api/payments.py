"""
Payment and payment request endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .dependencies import get_plan_engine, get_performed_by, result_or_raise
from .schemas import RefundRequest, PaymentSuccessRequest
from ..engine import PlanEngine


payments_router = APIRouter()
payment_requests_router = APIRouter()


@payments_router.post("/{payment_id}/refund")
async def refund_payment(
    payment_id: str,
    request: RefundRequest,
    engine: PlanEngine = Depends(get_plan_engine),
    performed_by: Optional[str] = Depends(get_performed_by)
):
    """Refund all or part of a payment"""
    return result_or_raise(
        engine.record_refund(payment_id, request.amount, request.is_full_refund, performed_by=performed_by)
    )


@payment_requests_router.post("/{payment_request_id}/paid")
async def payment_request_paid(
    payment_request_id: str,
    request: Optional[PaymentSuccessRequest] = None,
    engine: PlanEngine = Depends(get_plan_engine)
):
    """Processor webhook: a payment request was paid"""
    request = request or PaymentSuccessRequest()
    return result_or_raise(
        engine.record_payment_success(payment_request_id, request.amount, request.payment_ref)
    )

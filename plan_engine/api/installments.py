"""
Installment endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .dependencies import get_plan_engine, get_performed_by, result_or_raise
from .schemas import RescheduleInstallmentRequest
from ..engine import PlanEngine


router = APIRouter()


@router.post("/{installment_id}/reschedule")
async def reschedule_installment(
    installment_id: str,
    request: RescheduleInstallmentRequest,
    engine: PlanEngine = Depends(get_plan_engine),
    performed_by: Optional[str] = Depends(get_performed_by)
):
    """Move one installment to a new due date"""
    return result_or_raise(
        engine.reschedule_installment(installment_id, request.new_date, performed_by=performed_by)
    )


@router.post("/{installment_id}/manual-payment")
async def record_manual_payment(
    installment_id: str,
    engine: PlanEngine = Depends(get_plan_engine),
    performed_by: Optional[str] = Depends(get_performed_by)
):
    """Record an offline payment for one installment"""
    return result_or_raise(engine.record_manual_payment(installment_id, performed_by=performed_by))


@router.post("/{installment_id}/reminder")
async def send_reminder(
    installment_id: str,
    engine: PlanEngine = Depends(get_plan_engine),
    performed_by: Optional[str] = Depends(get_performed_by)
):
    """Send a payment reminder for one unpaid installment"""
    return result_or_raise(engine.send_payment_reminder(installment_id, performed_by=performed_by))

"""
Scheduled job endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .dependencies import get_plan_engine, result_or_raise
from .schemas import OverdueSweepRequest, SendDueRequestsRequest
from ..engine import PlanEngine


router = APIRouter()


@router.post("/overdue-sweep")
async def run_overdue_sweep(
    request: Optional[OverdueSweepRequest] = None,
    engine: PlanEngine = Depends(get_plan_engine)
):
    """Flag past-due installments as overdue, for one plan or all of them"""
    request = request or OverdueSweepRequest()
    if request.plan_id:
        return result_or_raise(engine.run_overdue_sweep(request.plan_id, request.today))
    return engine.run_overdue_sweep_all(request.today)


@router.post("/send-due-requests")
async def send_due_requests(
    request: Optional[SendDueRequestsRequest] = None,
    engine: PlanEngine = Depends(get_plan_engine)
):
    """Send payment requests for installments that have fallen due"""
    request = request or SendDueRequestsRequest()
    return engine.send_due_payment_requests(request.today)

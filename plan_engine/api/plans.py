"""
Plan endpoints
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import get_plan_engine, get_performed_by, result_or_raise
from .schemas import CreatePlanRequest, ResumePlanRequest, ReschedulePlanRequest
from ..engine import PlanEngine
from ..errors import PlanNotFoundError


router = APIRouter()


def _require_plan(engine: PlanEngine, plan_id: str):
    try:
        return engine.get_plan(plan_id)
    except PlanNotFoundError:
        raise HTTPException(status_code=404, detail="Plan not found")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_plan(
    request: CreatePlanRequest,
    engine: PlanEngine = Depends(get_plan_engine),
    performed_by: Optional[str] = Depends(get_performed_by)
):
    """Create a payment plan and its installment schedule"""
    result = engine.create_plan(
        clinic_id=request.clinic_id,
        patient_id=request.patient_id,
        link_id=request.link_id,
        title=request.title,
        total_amount=request.total_amount,
        installment_amount=request.installment_amount,
        count=request.count,
        cadence=request.cadence,
        start_date=request.start_date,
        performed_by=performed_by
    )
    return result_or_raise(result)


@router.get("/{plan_id}")
async def get_plan(plan_id: str, engine: PlanEngine = Depends(get_plan_engine)):
    """Get plan details"""
    return _require_plan(engine, plan_id).to_dict()


@router.get("/{plan_id}/status")
async def get_plan_status(plan_id: str, engine: PlanEngine = Depends(get_plan_engine)):
    """Stored and freshly derived status of a plan"""
    plan = _require_plan(engine, plan_id)
    return {
        "plan_id": plan_id,
        "status": plan.status.value,
        "resolved_status": engine.resolve_status(plan_id).value,
        "paid_installments": plan.paid_installments,
        "total_installments": plan.total_installments,
        "progress": plan.progress,
        "next_due_date": plan.next_due_date.isoformat() if plan.next_due_date else None,
        "has_overdue_payments": plan.has_overdue_payments
    }


@router.get("/{plan_id}/installments")
async def list_installments(plan_id: str, engine: PlanEngine = Depends(get_plan_engine)):
    """Installment schedule of a plan"""
    _require_plan(engine, plan_id)
    installments = engine.list_installments(plan_id)
    return {
        "plan_id": plan_id,
        "installments": [installment.to_dict() for installment in installments]
    }


@router.get("/{plan_id}/activity")
async def get_activity(
    plan_id: str,
    limit: Optional[int] = None,
    engine: PlanEngine = Depends(get_plan_engine)
):
    """Activity log of a plan, oldest first"""
    _require_plan(engine, plan_id)
    return {
        "plan_id": plan_id,
        "activity": [entry.to_dict() for entry in engine.get_activity(plan_id, limit)]
    }


@router.post("/{plan_id}/cancel")
async def cancel_plan(
    plan_id: str,
    engine: PlanEngine = Depends(get_plan_engine),
    performed_by: Optional[str] = Depends(get_performed_by)
):
    """Cancel a plan"""
    return result_or_raise(engine.cancel_plan(plan_id, performed_by=performed_by))


@router.post("/{plan_id}/pause")
async def pause_plan(
    plan_id: str,
    engine: PlanEngine = Depends(get_plan_engine),
    performed_by: Optional[str] = Depends(get_performed_by)
):
    """Pause a plan"""
    return result_or_raise(engine.pause_plan(plan_id, performed_by=performed_by))


@router.post("/{plan_id}/resume")
async def resume_plan(
    plan_id: str,
    request: ResumePlanRequest,
    engine: PlanEngine = Depends(get_plan_engine),
    performed_by: Optional[str] = Depends(get_performed_by)
):
    """Resume a paused plan from a new date"""
    return result_or_raise(
        engine.resume_plan(plan_id, request.resume_date, performed_by=performed_by)
    )


@router.post("/{plan_id}/reschedule")
async def reschedule_plan(
    plan_id: str,
    request: ReschedulePlanRequest,
    engine: PlanEngine = Depends(get_plan_engine),
    performed_by: Optional[str] = Depends(get_performed_by)
):
    """Move a plan's unpaid installments to a new start date"""
    return result_or_raise(
        engine.reschedule_plan(plan_id, request.new_start_date, performed_by=performed_by)
    )

"""
Pydantic schemas for API requests
"""

from datetime import date
from typing import Optional
from pydantic import BaseModel, Field


# Plan schemas
class CreatePlanRequest(BaseModel):
    clinic_id: str
    patient_id: str
    link_id: Optional[str] = None
    title: str
    total_amount: int = Field(..., description="Plan total in minor units")
    installment_amount: Optional[int] = Field(
        None, description="Per-installment amount; omitted splits the total evenly"
    )
    count: int = Field(..., description="Number of installments")
    cadence: str = Field(..., description="daily, weekly, biweekly, monthly, quarterly or yearly")
    start_date: date


class ResumePlanRequest(BaseModel):
    resume_date: date


class ReschedulePlanRequest(BaseModel):
    new_start_date: date


# Installment schemas
class RescheduleInstallmentRequest(BaseModel):
    new_date: date


# Payment schemas
class RefundRequest(BaseModel):
    amount: int = Field(..., description="Refund amount in minor units")
    is_full_refund: bool = False


class PaymentSuccessRequest(BaseModel):
    amount: Optional[int] = Field(None, description="Amount collected; defaults to the request amount")
    payment_ref: Optional[str] = None


# Job schemas
class OverdueSweepRequest(BaseModel):
    plan_id: Optional[str] = None
    today: Optional[date] = None


class SendDueRequestsRequest(BaseModel):
    today: Optional[date] = None

"""
Plan Status Resolver

Derives a plan's aggregate status and cached summary fields from one
consistent snapshot of its installments. Every lifecycle operation funnels
through summarize() so there is exactly one place that decides status.
"""

from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .classifier import is_settled
from .models import (
    Plan, PlanStatus, Installment, InstallmentStatus, PaymentRequest,
    EXPLICIT_PLAN_STATUSES, UNPAID_STATUSES
)


# Installments that count toward paid_installments
PAID_STATUSES = frozenset({InstallmentStatus.PAID, InstallmentStatus.PARTIALLY_REFUNDED})

# Installments showing that money was collected at some point
COLLECTED_STATUSES = frozenset({
    InstallmentStatus.PAID,
    InstallmentStatus.PARTIALLY_REFUNDED,
    InstallmentStatus.REFUNDED,
})

# Unpaid rows that still carry a due date the plan is waiting on
OUTSTANDING_STATUSES = UNPAID_STATUSES | {InstallmentStatus.PAUSED}


@dataclass
class PlanSummary:
    """Cached plan fields recomputed after every mutation"""
    status: PlanStatus
    paid_installments: int
    progress: int
    next_due_date: Optional[date]
    has_overdue_payments: bool

    def apply_to(self, plan: Plan) -> bool:
        """Copy onto the plan; returns True when the status changed"""
        changed = plan.status != self.status
        plan.status = self.status
        plan.paid_installments = self.paid_installments
        plan.progress = self.progress
        plan.next_due_date = self.next_due_date
        plan.has_overdue_payments = self.has_overdue_payments
        return changed


def _request_for(installment: Installment, requests: Dict[str, PaymentRequest]) -> Optional[PaymentRequest]:
    if not installment.linked_payment_request_id:
        return None
    return requests.get(installment.linked_payment_request_id)


def count_paid(installments: Iterable[Installment]) -> int:
    return sum(1 for installment in installments if installment.status in PAID_STATUSES)


def ever_paid(installments: Iterable[Installment]) -> bool:
    return any(installment.status in COLLECTED_STATUSES for installment in installments)


def compute_progress(paid_installments: int, total_installments: int) -> int:
    """round(100 * paid / total), halves rounded up"""
    if total_installments <= 0:
        return 0
    ratio = Decimal(100 * paid_installments) / Decimal(total_installments)
    return int(ratio.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def past_due_installments(
    installments: Iterable[Installment],
    requests: Dict[str, PaymentRequest],
    today: date
) -> List[Installment]:
    """Modifiable, unpaid installments whose due date is strictly before today"""
    return [
        installment for installment in installments
        if installment.status in UNPAID_STATUSES
        and installment.due_date < today
        and not is_settled(installment, _request_for(installment, requests))
    ]


def next_due_date(
    installments: Iterable[Installment],
    requests: Dict[str, PaymentRequest]
) -> Optional[date]:
    """Earliest due date among modifiable installments still waiting for money"""
    outstanding = [
        installment for installment in installments
        if installment.status in OUTSTANDING_STATUSES
        and not is_settled(installment, _request_for(installment, requests))
    ]
    if not outstanding:
        return None
    return min(outstanding, key=lambda i: (i.due_date, i.sequence_number)).due_date


def resolve_status(
    plan: Plan,
    installments: List[Installment],
    requests: Dict[str, PaymentRequest],
    today: date,
    transitioning: bool = False
) -> PlanStatus:
    """
    Resolve the plan's aggregate status

    Args:
        plan: Plan as stored
        installments: Every installment of the plan
        requests: Linked payment requests keyed by id
        today: Reference date for overdue detection
        transitioning: True while Resume/Reschedule moves the plan out of a
            sticky paused/cancelled state

    Returns:
        The derived PlanStatus
    """
    if not transitioning and plan.status in EXPLICIT_PLAN_STATUSES:
        return plan.status

    paid = count_paid(installments)
    if paid >= plan.total_installments:
        return PlanStatus.COMPLETED

    # A plan nobody has paid into yet stays pending even past its first due date
    if ever_paid(installments) and past_due_installments(installments, requests, today):
        return PlanStatus.OVERDUE

    if paid == 0:
        return PlanStatus.PENDING

    return PlanStatus.ACTIVE


def summarize(
    plan: Plan,
    installments: List[Installment],
    requests: Dict[str, PaymentRequest],
    today: date,
    transitioning: bool = False,
    status_override: Optional[PlanStatus] = None
) -> PlanSummary:
    """
    Recompute every cached plan field from a snapshot

    status_override pins the status (an explicit pause/cancel, or a paused
    plan being rescheduled) while still refreshing the counters.
    """
    paid = count_paid(installments)
    status = status_override or resolve_status(plan, installments, requests, today, transitioning)

    has_overdue = (
        status not in EXPLICIT_PLAN_STATUSES
        and ever_paid(installments)
        and bool(past_due_installments(installments, requests, today))
    )

    return PlanSummary(
        status=status,
        paid_installments=paid,
        progress=compute_progress(paid, plan.total_installments),
        next_due_date=None if status == PlanStatus.COMPLETED else next_due_date(installments, requests),
        has_overdue_payments=has_overdue
    )

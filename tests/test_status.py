"""
Test suite for status module

Tests plan status derivation, progress rounding and the cached summary
fields computed from a snapshot.
"""

import pytest
from datetime import datetime, timezone, date

from plan_engine.models import (
    Plan, PlanStatus, Installment, InstallmentStatus, PaymentRequest,
    PaymentRequestStatus
)
from plan_engine.schedule import Cadence
from plan_engine.status import (
    count_paid, ever_paid, compute_progress, past_due_installments,
    next_due_date, resolve_status, summarize
)


NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_plan(total=3, status=PlanStatus.PENDING):
    return Plan(
        id="PLAN001",
        created_at=NOW,
        updated_at=NOW,
        clinic_id="CLINIC001",
        patient_id="PATIENT001",
        payment_link_id="LINK001",
        title="Orthodontic treatment",
        total_amount=30000,
        installment_amount=10000,
        total_installments=total,
        cadence=Cadence.MONTHLY,
        start_date=date(2024, 1, 1),
        status=status
    )


def make_installment(number, status=InstallmentStatus.PENDING, due=None, request_id=None):
    return Installment(
        id=f"INST{number}",
        created_at=NOW,
        updated_at=NOW,
        plan_id="PLAN001",
        clinic_id="CLINIC001",
        patient_id="PATIENT001",
        payment_link_id="LINK001",
        sequence_number=number,
        total_in_series=3,
        amount=10000,
        due_date=due or date(2024, number, 1),
        status=status,
        linked_payment_request_id=request_id
    )


def paid_installment(number, due=None):
    return make_installment(number, InstallmentStatus.PAID, due, request_id=f"REQ{number}")


def paid_requests(*numbers):
    return {
        f"REQ{n}": PaymentRequest(
            id=f"REQ{n}",
            created_at=NOW,
            updated_at=NOW,
            clinic_id="CLINIC001",
            patient_id="PATIENT001",
            payment_link_id="LINK001",
            status=PaymentRequestStatus.PAID,
            payment_id=f"PAY{n}"
        )
        for n in numbers
    }


class TestProgress:
    """Test progress rounding"""

    @pytest.mark.parametrize("paid,total,expected", [
        (0, 3, 0),
        (1, 3, 33),
        (2, 3, 67),
        (3, 3, 100),
        (1, 8, 13),   # 12.5 rounds half up
        (1, 0, 0),
    ])
    def test_compute_progress(self, paid, total, expected):
        assert compute_progress(paid, total) == expected


class TestHelpers:
    """Test snapshot helpers"""

    def test_count_paid_includes_partial_refunds(self):
        installments = [
            paid_installment(1),
            make_installment(2, InstallmentStatus.PARTIALLY_REFUNDED),
            make_installment(3, InstallmentStatus.REFUNDED),
        ]
        assert count_paid(installments) == 2
        assert ever_paid(installments)

    def test_ever_paid_after_full_refund(self):
        assert ever_paid([make_installment(1, InstallmentStatus.REFUNDED)])
        assert not ever_paid([make_installment(1)])

    def test_past_due_is_strictly_before_today(self):
        installments = [make_installment(1, due=date(2024, 2, 1))]
        assert past_due_installments(installments, {}, date(2024, 2, 1)) == []
        assert past_due_installments(installments, {}, date(2024, 2, 2)) == installments

    def test_next_due_date_skips_settled_and_cancelled(self):
        installments = [
            paid_installment(1),
            make_installment(2, InstallmentStatus.CANCELLED),
            make_installment(3, InstallmentStatus.PAUSED),
        ]
        assert next_due_date(installments, paid_requests(1)) == date(2024, 3, 1)

    def test_next_due_date_none_when_nothing_outstanding(self):
        assert next_due_date([paid_installment(1)], paid_requests(1)) is None


class TestResolveStatus:
    """Test plan status derivation"""

    def test_nothing_paid_is_pending_even_when_past_due(self):
        """Test a plan nobody has paid into never reads as overdue"""
        installments = [make_installment(n) for n in (1, 2, 3)]
        status = resolve_status(make_plan(), installments, {}, date(2024, 6, 1))
        assert status == PlanStatus.PENDING

    def test_missed_date_after_payment_is_overdue(self):
        installments = [paid_installment(1), make_installment(2), make_installment(3)]
        status = resolve_status(make_plan(), installments, paid_requests(1), date(2024, 2, 2))
        assert status == PlanStatus.OVERDUE

    def test_paid_and_current_is_active(self):
        installments = [paid_installment(1), make_installment(2), make_installment(3)]
        status = resolve_status(make_plan(), installments, paid_requests(1), date(2024, 1, 15))
        assert status == PlanStatus.ACTIVE

    def test_all_paid_is_completed(self):
        installments = [paid_installment(n) for n in (1, 2, 3)]
        status = resolve_status(make_plan(), installments, paid_requests(1, 2, 3), date(2024, 6, 1))
        assert status == PlanStatus.COMPLETED

    @pytest.mark.parametrize("sticky", [PlanStatus.PAUSED, PlanStatus.CANCELLED])
    def test_explicit_status_is_sticky(self, sticky):
        installments = [paid_installment(1), make_installment(2), make_installment(3)]
        plan = make_plan(status=sticky)
        assert resolve_status(plan, installments, paid_requests(1), date(2024, 6, 1)) == sticky

    def test_transitioning_recomputes_explicit_status(self):
        installments = [paid_installment(1), make_installment(2), make_installment(3)]
        plan = make_plan(status=PlanStatus.PAUSED)
        status = resolve_status(plan, installments, paid_requests(1), date(2024, 1, 15), transitioning=True)
        assert status == PlanStatus.ACTIVE


class TestSummarize:
    """Test the full cached summary"""

    def test_summary_fields(self):
        installments = [paid_installment(1), make_installment(2), make_installment(3)]
        summary = summarize(make_plan(), installments, paid_requests(1), date(2024, 2, 15))

        assert summary.status == PlanStatus.OVERDUE
        assert summary.paid_installments == 1
        assert summary.progress == 33
        assert summary.next_due_date == date(2024, 2, 1)
        assert summary.has_overdue_payments

    def test_completed_has_no_next_due_date(self):
        installments = [paid_installment(n) for n in (1, 2, 3)]
        summary = summarize(make_plan(), installments, paid_requests(1, 2, 3), date(2024, 6, 1))

        assert summary.status == PlanStatus.COMPLETED
        assert summary.progress == 100
        assert summary.next_due_date is None
        assert not summary.has_overdue_payments

    def test_override_suppresses_overdue_flag(self):
        installments = [paid_installment(1), make_installment(2), make_installment(3)]
        summary = summarize(
            make_plan(), installments, paid_requests(1), date(2024, 6, 1),
            status_override=PlanStatus.PAUSED
        )
        assert summary.status == PlanStatus.PAUSED
        assert not summary.has_overdue_payments

    def test_apply_to_reports_status_change(self):
        plan = make_plan()
        installments = [paid_installment(1), make_installment(2), make_installment(3)]
        summary = summarize(plan, installments, paid_requests(1), date(2024, 1, 15))

        assert summary.apply_to(plan)
        assert plan.status == PlanStatus.ACTIVE
        assert plan.paid_installments == 1
        assert not summary.apply_to(plan)

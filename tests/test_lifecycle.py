"""
Test suite for lifecycle module

Tests plan creation, cancel, pause, resume, reschedule and the overdue sweep,
with emphasis on settled installments never being modified.
"""

import pytest
from datetime import date

from plan_engine.activity import ActivityLog, ActivityType
from plan_engine.errors import (
    InstallmentAlreadySettledError, InvalidAmountError, InvalidCadenceError,
    InvalidDateRangeError, InvalidPlanStateError, PlanNotFoundError, StoreConflictError
)
from plan_engine.lifecycle import PlanLifecycleManager
from plan_engine.models import PlanStatus, InstallmentStatus, PaymentRequestStatus
from plan_engine.notifications import (
    InMemoryNotificationDispatcher, NotificationEmitter, NotificationKind
)
from plan_engine.payments import PaymentManager
from plan_engine.storage import InMemoryStorage
from plan_engine.store import PlanStore


class Clock:
    def __init__(self, today):
        self.today = today

    def __call__(self):
        return self.today


@pytest.fixture
def clock():
    return Clock(date(2024, 1, 1))


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def store(storage):
    return PlanStore(storage)


@pytest.fixture
def dispatcher():
    return InMemoryNotificationDispatcher()


@pytest.fixture
def activity_log(storage):
    return ActivityLog(storage)


@pytest.fixture
def lifecycle(store, activity_log, dispatcher, clock):
    emitter = NotificationEmitter(dispatcher, timeout_seconds=1.0)
    store.save_contact(PlanStore.PATIENTS, "PATIENT001", email="patient@example.com")
    store.save_contact(PlanStore.CLINICS, "CLINIC001", email="clinic@example.com")
    yield PlanLifecycleManager(store, activity_log, emitter, clock)
    emitter.shutdown()


@pytest.fixture
def payments(lifecycle):
    return PaymentManager(lifecycle.store, lifecycle.activity_log, lifecycle.emitter, lifecycle._clock)


def create(lifecycle, count=3, start=date(2024, 1, 1), cadence="monthly", amount=10000):
    outcome = lifecycle.create_plan(
        clinic_id="CLINIC001",
        patient_id="PATIENT001",
        link_id="LINK001",
        title="Orthodontic treatment",
        total_amount=amount * count,
        installment_amount=amount,
        count=count,
        cadence=cadence,
        start_date=start,
        performed_by="USER001"
    )
    return outcome.plan


def rows(store, plan_id):
    return store.get_installments(plan_id)


def pay(payments, store, plan_id, *numbers):
    installments = rows(store, plan_id)
    for number in numbers:
        payments.record_manual_payment(installments[number - 1].id)


class TestCreatePlan:
    """Test plan creation"""

    def test_schedule_and_summary(self, lifecycle, store):
        plan = create(lifecycle, count=3)

        stored = store.require_plan(plan.id)
        assert stored.status == PlanStatus.PENDING
        assert stored.version == 2
        assert stored.paid_installments == 0
        assert stored.progress == 0
        assert stored.next_due_date == date(2024, 1, 1)

        installments = rows(store, plan.id)
        assert [i.sequence_number for i in installments] == [1, 2, 3]
        assert [i.due_date for i in installments] == [date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1)]
        assert all(i.status == InstallmentStatus.PENDING for i in installments)
        assert all(i.total_in_series == 3 for i in installments)

    def test_even_split(self, lifecycle, store):
        outcome = lifecycle.create_plan(
            "CLINIC001", "PATIENT001", None, "Whitening", 10000, None, 3, "weekly", date(2024, 1, 1)
        )
        amounts = [i.amount for i in rows(store, outcome.plan.id)]
        assert amounts == [3333, 3333, 3334]
        assert sum(amounts) == 10000

    def test_last_installment_absorbs_difference(self, lifecycle, store):
        outcome = lifecycle.create_plan(
            "CLINIC001", "PATIENT001", None, "Crown", 25000, 10000, 3, "monthly", date(2024, 1, 1)
        )
        assert [i.amount for i in rows(store, outcome.plan.id)] == [10000, 10000, 5000]

    def test_month_end_clamping(self, lifecycle, store):
        plan = create(lifecycle, count=3, start=date(2024, 1, 31))
        assert [i.due_date for i in rows(store, plan.id)] == [
            date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)
        ]

    def test_invalid_cadence(self, lifecycle):
        with pytest.raises(InvalidCadenceError):
            create(lifecycle, cadence="fortnightly-ish")

    def test_installments_exceeding_total(self, lifecycle):
        with pytest.raises(InvalidAmountError):
            lifecycle.create_plan(
                "CLINIC001", "PATIENT001", None, "Crown", 10000, 6000, 3, "monthly", date(2024, 1, 1)
            )

    def test_create_is_logged(self, lifecycle, activity_log):
        plan = create(lifecycle)
        entries = activity_log.get_plan_activity(plan.id)
        assert [e.action_type for e in entries] == [ActivityType.CREATE]
        assert entries[0].performed_by_user_id == "USER001"
        assert entries[0].details.total_installments == 3


class TestCancelPlan:
    """Test cancellation"""

    def test_cancel_keeps_settled_installments(self, lifecycle, payments, store):
        plan = create(lifecycle)
        pay(payments, store, plan.id, 1)

        outcome = lifecycle.cancel_plan(plan.id, performed_by="USER001")

        assert outcome.affected == 2
        assert outcome.plan.status == PlanStatus.CANCELLED
        statuses = [i.status for i in rows(store, plan.id)]
        assert statuses == [InstallmentStatus.PAID, InstallmentStatus.CANCELLED, InstallmentStatus.CANCELLED]

    def test_cancel_is_idempotent(self, lifecycle, activity_log):
        plan = create(lifecycle)
        lifecycle.cancel_plan(plan.id)

        outcome = lifecycle.cancel_plan(plan.id)

        assert outcome.affected == 0
        assert not outcome.status_changed
        assert outcome.plan.status == PlanStatus.CANCELLED
        cancels = activity_log.get_activity_by_type(ActivityType.CANCEL, plan_id=plan.id)
        assert len(cancels) == 2

    def test_cancel_leaves_requests_open(self, lifecycle, payments, store):
        plan = create(lifecycle)
        payments.send_due_payment_requests(date(2024, 1, 1))
        request_id = rows(store, plan.id)[0].linked_payment_request_id

        lifecycle.cancel_plan(plan.id)

        assert store.get_request(request_id).status == PaymentRequestStatus.SENT

    def test_completed_plan_cannot_be_cancelled(self, lifecycle, payments, store):
        plan = create(lifecycle, count=1)
        pay(payments, store, plan.id, 1)

        with pytest.raises(InvalidPlanStateError):
            lifecycle.cancel_plan(plan.id)

    def test_unknown_plan(self, lifecycle):
        with pytest.raises(PlanNotFoundError):
            lifecycle.cancel_plan("missing")

    def test_status_change_notifies(self, lifecycle, dispatcher):
        plan = create(lifecycle)
        lifecycle.cancel_plan(plan.id)
        assert lifecycle.emitter.flush(1.0)

        events = dispatcher.of_kind(NotificationKind.PLAN_STATUS_CHANGED)
        assert len(events) == 2
        assert events[0].details["status"] == "cancelled"


class TestPausePlan:
    """Test pausing"""

    def test_pause_counts_by_origin(self, lifecycle, payments, store, clock):
        plan = create(lifecycle, count=4)
        pay(payments, store, plan.id, 1)
        payments.send_due_payment_requests(date(2024, 2, 1))
        clock.today = date(2024, 2, 10)
        lifecycle.run_overdue_sweep(plan.id)
        payments.send_due_payment_requests(date(2024, 3, 1))

        outcome = lifecycle.pause_plan(plan.id)

        details = outcome.details
        assert details.paused_from_overdue == 1
        assert details.paused_from_sent == 1
        assert details.paused_from_pending == 1
        assert outcome.affected == 3
        assert outcome.plan.status == PlanStatus.PAUSED
        assert rows(store, plan.id)[0].status == InstallmentStatus.PAID

    def test_pause_is_idempotent(self, lifecycle):
        plan = create(lifecycle)
        lifecycle.pause_plan(plan.id)

        outcome = lifecycle.pause_plan(plan.id)

        assert outcome.affected == 0
        assert outcome.plan.status == PlanStatus.PAUSED

    def test_pause_cancelled_plan_rejected(self, lifecycle):
        plan = create(lifecycle)
        lifecycle.cancel_plan(plan.id)
        with pytest.raises(InvalidPlanStateError):
            lifecycle.pause_plan(plan.id)

    def test_paid_request_is_never_paused(self, lifecycle, payments, store, storage):
        """Test money landing on a sent request keeps the installment out of the pause"""
        plan = create(lifecycle)
        payments.send_due_payment_requests(date(2024, 1, 1))
        first = rows(store, plan.id)[0]
        storage.update_where(
            PlanStore.REQUESTS, first.linked_payment_request_id, {}, {"payment_id": "PAY-LATE"}
        )

        outcome = lifecycle.pause_plan(plan.id)

        assert outcome.affected == 2
        assert outcome.details.installments_skipped == 1
        assert rows(store, plan.id)[0].status == InstallmentStatus.SENT

    def test_payment_between_read_and_write(self, lifecycle, payments, store, storage, monkeypatch):
        """Test the write-time guard when the snapshot still shows the request unpaid"""
        plan = create(lifecycle)
        payments.send_due_payment_requests(date(2024, 1, 1))
        stale_requests = store.get_requests(rows(store, plan.id))
        first = rows(store, plan.id)[0]
        storage.update_where(
            PlanStore.REQUESTS, first.linked_payment_request_id, {}, {"payment_id": "PAY-LATE"}
        )
        monkeypatch.setattr(store, "get_requests", lambda installments: dict(stale_requests))

        outcome = lifecycle.pause_plan(plan.id)

        assert outcome.details.installments_skipped == 1
        assert rows(store, plan.id)[0].status == InstallmentStatus.SENT


class TestResumePlan:
    """Test resuming a paused plan"""

    def test_resume_redates_from_resume_date(self, lifecycle, payments, store, clock):
        plan = create(lifecycle, count=4)
        clock.today = date(2024, 2, 15)
        pay(payments, store, plan.id, 1, 2)
        lifecycle.pause_plan(plan.id)
        clock.today = date(2024, 5, 20)

        outcome = lifecycle.resume_plan(plan.id, date(2024, 6, 1))

        installments = rows(store, plan.id)
        assert [i.status for i in installments] == [
            InstallmentStatus.PAID, InstallmentStatus.PAID,
            InstallmentStatus.PENDING, InstallmentStatus.PENDING
        ]
        assert installments[0].due_date == date(2024, 1, 1)
        assert installments[2].due_date == date(2024, 6, 1)
        assert installments[3].due_date == date(2024, 7, 1)
        assert outcome.plan.next_due_date == date(2024, 6, 1)
        assert outcome.plan.status == PlanStatus.ACTIVE
        assert outcome.affected == 2

    def test_resume_cancels_open_requests(self, lifecycle, payments, store):
        plan = create(lifecycle)
        payments.send_due_payment_requests(date(2024, 1, 1))
        request_id = rows(store, plan.id)[0].linked_payment_request_id
        lifecycle.pause_plan(plan.id)

        outcome = lifecycle.resume_plan(plan.id, date(2024, 3, 1))

        assert outcome.details.payment_requests_cancelled == 1
        assert store.get_request(request_id).status == PaymentRequestStatus.CANCELLED
        assert rows(store, plan.id)[0].linked_payment_request_id is None

    def test_resume_into_the_past_goes_overdue(self, lifecycle, payments, store, clock):
        plan = create(lifecycle)
        pay(payments, store, plan.id, 1)
        lifecycle.pause_plan(plan.id)
        clock.today = date(2024, 4, 1)

        outcome = lifecycle.resume_plan(plan.id, date(2024, 3, 1))

        assert outcome.plan.status == PlanStatus.OVERDUE
        assert rows(store, plan.id)[1].status == InstallmentStatus.OVERDUE

    def test_resume_without_payments_is_pending(self, lifecycle):
        plan = create(lifecycle)
        lifecycle.pause_plan(plan.id)
        outcome = lifecycle.resume_plan(plan.id, date(2024, 2, 1))
        assert outcome.plan.status == PlanStatus.PENDING

    def test_resume_cancelled_plan_rejected(self, lifecycle):
        plan = create(lifecycle)
        lifecycle.cancel_plan(plan.id)
        with pytest.raises(InvalidPlanStateError):
            lifecycle.resume_plan(plan.id, date(2024, 2, 1))

    def test_resume_before_settled_due_date_rejected(self, lifecycle, payments, store):
        plan = create(lifecycle)
        pay(payments, store, plan.id, 1)
        lifecycle.pause_plan(plan.id)
        before = [(i.due_date, i.status) for i in rows(store, plan.id)]

        with pytest.raises(InvalidDateRangeError):
            lifecycle.resume_plan(plan.id, date(2023, 12, 15))

        assert [(i.due_date, i.status) for i in rows(store, plan.id)] == before
        assert store.require_plan(plan.id).status == PlanStatus.PAUSED


class TestReschedulePlan:
    """Test shifting a whole plan"""

    def test_shift_preserves_settled(self, lifecycle, payments, store):
        plan = create(lifecycle)
        pay(payments, store, plan.id, 1)

        outcome = lifecycle.reschedule_plan(plan.id, date(2024, 1, 15))

        installments = rows(store, plan.id)
        assert [i.due_date for i in installments] == [
            date(2024, 1, 1), date(2024, 2, 15), date(2024, 3, 15)
        ]
        assert installments[0].status == InstallmentStatus.PAID
        assert outcome.affected == 2
        assert outcome.details.shift_days == 14
        assert store.require_plan(plan.id).start_date == date(2024, 1, 15)

    def test_shift_ahead_of_settled_rejected(self, lifecycle, payments, store):
        plan = create(lifecycle)
        pay(payments, store, plan.id, 1)
        before = [i.due_date for i in rows(store, plan.id)]

        with pytest.raises(InvalidDateRangeError):
            lifecycle.reschedule_plan(plan.id, date(2023, 11, 1))

        assert [i.due_date for i in rows(store, plan.id)] == before
        assert store.require_plan(plan.id).start_date == date(2024, 1, 1)

    def test_reschedule_after_two_payments(self, lifecycle, payments, store):
        """Test new start before the last paid due date only moves the unpaid tail"""
        plan = create(lifecycle, count=4)
        pay(payments, store, plan.id, 1, 2)

        outcome = lifecycle.reschedule_plan(plan.id, date(2024, 1, 15))

        installments = rows(store, plan.id)
        assert [i.due_date for i in installments] == [
            date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 15), date(2024, 4, 15)
        ]
        assert [i.status for i in installments[:2]] == [InstallmentStatus.PAID, InstallmentStatus.PAID]
        assert outcome.affected == 2
        assert outcome.plan.status == PlanStatus.ACTIVE
        assert outcome.plan.next_due_date == date(2024, 3, 15)

    def test_paused_plan_stays_paused(self, lifecycle, store):
        plan = create(lifecycle)
        lifecycle.pause_plan(plan.id)

        outcome = lifecycle.reschedule_plan(plan.id, date(2024, 2, 1))

        assert outcome.plan.status == PlanStatus.PAUSED
        assert all(i.status == InstallmentStatus.PAUSED for i in rows(store, plan.id))
        assert rows(store, plan.id)[0].due_date == date(2024, 2, 1)

    def test_reschedule_cancels_open_requests(self, lifecycle, payments, store):
        plan = create(lifecycle)
        payments.send_due_payment_requests(date(2024, 1, 1))

        outcome = lifecycle.reschedule_plan(plan.id, date(2024, 1, 10))

        first = rows(store, plan.id)[0]
        assert outcome.details.payment_requests_cancelled == 1
        assert first.status == InstallmentStatus.PENDING
        assert first.linked_payment_request_id is None


class TestRescheduleInstallment:
    """Test moving a single installment"""

    def test_move_within_neighbours(self, lifecycle, store):
        plan = create(lifecycle)
        second = rows(store, plan.id)[1]

        outcome = lifecycle.reschedule_installment(second.id, date(2024, 2, 20))

        assert outcome.affected == 1
        assert outcome.details.installment_id == second.id
        assert store.require_installment(second.id).due_date == date(2024, 2, 20)

    def test_move_past_next_rejected(self, lifecycle, store):
        plan = create(lifecycle)
        second = rows(store, plan.id)[1]
        with pytest.raises(InvalidDateRangeError):
            lifecycle.reschedule_installment(second.id, date(2024, 3, 5))

    def test_move_before_previous_rejected(self, lifecycle, store):
        plan = create(lifecycle)
        second = rows(store, plan.id)[1]
        with pytest.raises(InvalidDateRangeError):
            lifecycle.reschedule_installment(second.id, date(2023, 12, 31))

    def test_settled_installment_rejected(self, lifecycle, payments, store):
        plan = create(lifecycle)
        pay(payments, store, plan.id, 1)
        with pytest.raises(InstallmentAlreadySettledError):
            lifecycle.reschedule_installment(rows(store, plan.id)[0].id, date(2024, 1, 2))

    def test_paused_installment_stays_paused(self, lifecycle, store):
        plan = create(lifecycle)
        lifecycle.pause_plan(plan.id)
        third = rows(store, plan.id)[2]

        lifecycle.reschedule_installment(third.id, date(2024, 3, 20))

        assert store.require_installment(third.id).status == InstallmentStatus.PAUSED
        assert store.require_plan(plan.id).status == PlanStatus.PAUSED


class TestOverdueSweep:
    """Test flagging missed installments"""

    def test_due_today_is_not_overdue(self, lifecycle, payments, store):
        plan = create(lifecycle)
        pay(payments, store, plan.id, 1)

        outcome = lifecycle.run_overdue_sweep(plan.id, date(2024, 2, 1))

        assert outcome.affected == 0
        assert store.require_plan(plan.id).status == PlanStatus.ACTIVE

    def test_day_after_due_is_overdue(self, lifecycle, payments, store, activity_log):
        plan = create(lifecycle)
        pay(payments, store, plan.id, 1)

        outcome = lifecycle.run_overdue_sweep(plan.id, date(2024, 2, 2))

        assert outcome.affected == 1
        stored = store.require_plan(plan.id)
        assert stored.status == PlanStatus.OVERDUE
        assert stored.has_overdue_payments
        assert rows(store, plan.id)[1].status == InstallmentStatus.OVERDUE
        assert len(activity_log.get_activity_by_type(ActivityType.OVERDUE, plan_id=plan.id)) == 1

    def test_unpaid_plan_stays_pending(self, lifecycle, store):
        plan = create(lifecycle)

        outcome = lifecycle.run_overdue_sweep(plan.id, date(2024, 6, 1))

        assert outcome.affected == 3
        assert store.require_plan(plan.id).status == PlanStatus.PENDING

    def test_second_sweep_is_quiet(self, lifecycle, payments, store, activity_log):
        plan = create(lifecycle)
        pay(payments, store, plan.id, 1)
        lifecycle.run_overdue_sweep(plan.id, date(2024, 2, 2))

        outcome = lifecycle.run_overdue_sweep(plan.id, date(2024, 2, 3))

        assert outcome.affected == 0
        assert len(activity_log.get_activity_by_type(ActivityType.OVERDUE, plan_id=plan.id)) == 1

    def test_paused_plan_skipped(self, lifecycle, store):
        plan = create(lifecycle)
        lifecycle.pause_plan(plan.id)
        assert lifecycle.run_overdue_sweep(plan.id, date(2024, 6, 1)).affected == 0
        assert all(i.status == InstallmentStatus.PAUSED for i in rows(store, plan.id))

    def test_sweep_all(self, lifecycle, payments, store):
        first = create(lifecycle)
        pay(payments, store, first.id, 1)
        second = create(lifecycle)
        paused = create(lifecycle)
        lifecycle.pause_plan(paused.id)

        results = lifecycle.run_overdue_sweep_all(date(2024, 2, 2))

        assert results["plans_checked"] == 2
        assert results["plans_updated"] == 2
        assert results["installments_marked_overdue"] == 3
        assert store.require_plan(second.id).status == PlanStatus.PENDING


class TestConcurrency:
    """Test optimistic concurrency on the plan row"""

    def test_stale_version_conflicts(self, lifecycle, store):
        plan = create(lifecycle)
        first = store.require_plan(plan.id)
        second = store.require_plan(plan.id)

        store.save_plan(first)
        with pytest.raises(StoreConflictError):
            store.save_plan(second)

    def test_failed_operation_rolls_back(self, lifecycle, store, monkeypatch):
        plan = create(lifecycle)

        def conflict(plan):
            raise StoreConflictError("Plan was modified concurrently", plan_id=plan.id)

        monkeypatch.setattr(store, "save_plan", conflict)
        with pytest.raises(StoreConflictError):
            lifecycle.pause_plan(plan.id)

        assert all(i.status == InstallmentStatus.PENDING for i in rows(store, plan.id))


def fields(record, *ignored):
    data = record.to_dict()
    for key in ("updated_at",) + ignored:
        data.pop(key)
    return data


def resume(lifecycle, store, plan_id):
    lifecycle.pause_plan(plan_id)
    return lifecycle.resume_plan(plan_id, date(2024, 3, 1))


def move_last(lifecycle, store, plan_id):
    return lifecycle.reschedule_installment(rows(store, plan_id)[2].id, date(2024, 3, 20))


OPERATIONS = {
    "cancel": lambda lifecycle, store, plan_id: lifecycle.cancel_plan(plan_id),
    "pause": lambda lifecycle, store, plan_id: lifecycle.pause_plan(plan_id),
    "resume": resume,
    "reschedule_plan": lambda lifecycle, store, plan_id: lifecycle.reschedule_plan(plan_id, date(2024, 1, 15)),
    "reschedule_installment": move_last,
    "overdue_sweep": lambda lifecycle, store, plan_id: lifecycle.run_overdue_sweep(plan_id, date(2024, 6, 1)),
}


class TestSettledRowsUntouched:
    """Test lifecycle operations never rewrite a paid installment"""

    @pytest.mark.parametrize("operation", sorted(OPERATIONS))
    def test_paid_row_fields_unchanged(self, lifecycle, payments, store, operation):
        plan = create(lifecycle)
        pay(payments, store, plan.id, 1)
        paid = rows(store, plan.id)[0]
        before = fields(paid)

        OPERATIONS[operation](lifecycle, store, plan.id)

        assert fields(store.require_installment(paid.id)) == before

    @pytest.mark.parametrize("operation", ["cancel", "pause"])
    def test_repeat_leaves_identical_state(self, lifecycle, payments, store, operation):
        plan = create(lifecycle)
        pay(payments, store, plan.id, 1)
        payments.send_due_payment_requests(date(2024, 2, 1))
        OPERATIONS[operation](lifecycle, store, plan.id)
        installments_once = [fields(i) for i in rows(store, plan.id)]
        plan_once = fields(store.require_plan(plan.id), "version")

        outcome = OPERATIONS[operation](lifecycle, store, plan.id)

        assert outcome.affected == 0
        assert [fields(i) for i in rows(store, plan.id)] == installments_once
        assert fields(store.require_plan(plan.id), "version") == plan_once

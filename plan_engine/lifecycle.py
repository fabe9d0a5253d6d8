"""
Plan Lifecycle Module

Plan-level lifecycle operations: create, cancel, pause, resume, reschedule
(whole plan or a single installment) and the overdue sweep. Each operation
reads one snapshot and writes installments, the plan summary and exactly one
activity entry inside a single store transaction. Settled installments are
never touched.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone, date
from typing import Callable, Dict, List, Optional, Union

from .activity import (
    ActivityLog, ActivityDetails, CreateDetails, CancelDetails, PauseDetails,
    ResumeDetails, RescheduleDetails, OverdueDetails
)
from .classifier import assert_transition, is_settled, require_modifiable
from .errors import (
    InvalidAmountError, InvalidDateRangeError, InvalidPlanStateError,
    InstallmentAlreadySettledError
)
from .models import (
    Plan, PlanStatus, Installment, InstallmentStatus, UNPAID_STATUSES
)
from .notifications import NotificationEmitter, NotificationEvent, NotificationKind, build_events
from .schedule import Cadence, advance, generate_schedule, parse_cadence, shift_date, split_total
from .status import summarize
from .store import PlanStore, PlanSnapshot


logger = logging.getLogger("plan_engine.lifecycle")


# Rows a sweep may flag as overdue
SWEEPABLE_STATUSES = frozenset({InstallmentStatus.PENDING, InstallmentStatus.SENT})

# Rows Cancel may terminate
CANCELLABLE_STATUSES = UNPAID_STATUSES | {InstallmentStatus.PAUSED}

# Rows Reschedule moves
MOVABLE_STATUSES = UNPAID_STATUSES | {InstallmentStatus.PAUSED}


@dataclass
class LifecycleOutcome:
    """What an operation did, for the engine facade to report"""
    plan: Plan
    affected: int
    status_changed: bool = False
    details: Optional[ActivityDetails] = None


class PlanOperations:
    """
    Shared plumbing for the plan and payment managers: the clock, summary
    recomputation, activity logging and post-commit notifications
    """

    def __init__(
        self,
        store: PlanStore,
        activity_log: Optional[ActivityLog] = None,
        emitter: Optional[NotificationEmitter] = None,
        clock: Optional[Callable[[], date]] = None
    ):
        self.store = store
        self.activity_log = activity_log
        self.emitter = emitter
        self._clock = clock or date.today

    def today(self) -> date:
        return self._clock()

    def _commit_summary(
        self,
        snapshot: PlanSnapshot,
        today: date,
        transitioning: bool = False,
        status_override: Optional[PlanStatus] = None
    ) -> bool:
        """Recompute cached plan fields and write the plan; True if the status changed"""
        summary = summarize(
            snapshot.plan, snapshot.installments, snapshot.requests, today,
            transitioning=transitioning, status_override=status_override
        )
        changed = summary.apply_to(snapshot.plan)
        self.store.save_plan(snapshot.plan)
        return changed

    def _log(self, plan: Plan, details: ActivityDetails, performed_by: Optional[str]) -> None:
        if self.activity_log is not None:
            self.activity_log.log(plan, details, performed_by=performed_by)

    def _status_events(self, plan: Plan, previous_status: PlanStatus) -> List[NotificationEvent]:
        patient, clinic = self.store.contacts_for(plan)
        return build_events(
            NotificationKind.PLAN_STATUS_CHANGED, plan, patient, clinic,
            details={'previous_status': previous_status.value, 'status': plan.status.value}
        )

    def _emit(self, events: List[NotificationEvent]) -> None:
        if self.emitter is not None and events:
            self.emitter.emit(events)

    def _flip_past_due(self, snapshot: PlanSnapshot, today: date) -> List[Installment]:
        """Mark modifiable pending/sent rows due before today as overdue"""
        flipped = []
        for installment in snapshot.installments:
            if installment.status not in SWEEPABLE_STATUSES or installment.due_date >= today:
                continue
            if is_settled(installment, snapshot.request_for(installment)):
                continue
            assert_transition(installment, InstallmentStatus.OVERDUE)
            installment.status = InstallmentStatus.OVERDUE
            self.store.save_installment(installment)
            flipped.append(installment)
        return flipped


class PlanLifecycleManager(PlanOperations):
    """
    Manages plan creation and the plan-level lifecycle operations
    """

    def create_plan(
        self,
        clinic_id: str,
        patient_id: str,
        link_id: Optional[str],
        title: str,
        total_amount: int,
        installment_amount: Optional[int],
        count: int,
        cadence: Union[str, Cadence],
        start_date: date,
        performed_by: Optional[str] = None
    ) -> LifecycleOutcome:
        """
        Create a plan and its installment schedule

        Args:
            clinic_id: Owning clinic
            patient_id: Paying patient
            link_id: Payment link the plan was created from
            title: Plan title shown to the patient
            total_amount: Plan total in minor units
            installment_amount: Per-installment amount; None splits the total
                evenly with the final installment absorbing the remainder
            count: Number of installments
            cadence: Recurrence rule
            start_date: Due date of the first installment
            performed_by: Acting user id

        Returns:
            LifecycleOutcome for the new plan
        """
        cadence = parse_cadence(cadence)
        amounts = self._installment_amounts(total_amount, installment_amount, count)
        schedule = generate_schedule(start_date, cadence, count, amounts)

        now = datetime.now(timezone.utc)
        plan = Plan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            clinic_id=clinic_id,
            patient_id=patient_id,
            payment_link_id=link_id,
            title=title,
            total_amount=total_amount,
            installment_amount=amounts[0],
            total_installments=count,
            cadence=cadence,
            start_date=start_date,
            created_by=performed_by
        )
        installments = [
            Installment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                plan_id=plan.id,
                clinic_id=clinic_id,
                patient_id=patient_id,
                payment_link_id=link_id,
                sequence_number=entry.sequence_number,
                total_in_series=entry.total_in_series,
                amount=entry.amount,
                due_date=entry.due_date
            )
            for entry in schedule
        ]

        details = CreateDetails(
            title=title,
            total_amount=total_amount,
            installment_amount=amounts[0],
            total_installments=count,
            cadence=cadence.value,
            start_date=start_date.isoformat()
        )

        with self.store.transaction():
            self.store.insert_plan(plan)
            for installment in installments:
                self.store.save_installment(installment)
            snapshot = PlanSnapshot(plan=plan, installments=installments, requests={})
            self._commit_summary(snapshot, self.today())
            self._log(plan, details, performed_by)

        logger.info(
            f"Created plan {plan.id} with {count} {cadence.value} installments",
            extra={'action': 'create', 'resource': plan.id, 'user_id': performed_by}
        )
        return LifecycleOutcome(plan=plan, affected=count, details=details)

    def cancel_plan(self, plan_id: str, performed_by: Optional[str] = None) -> LifecycleOutcome:
        """
        Cancel a plan: every modifiable outstanding installment becomes
        cancelled. Outstanding payment requests are left as they are.
        """
        with self.store.transaction():
            snapshot = self.store.snapshot(plan_id)
            plan = snapshot.plan
            if plan.status == PlanStatus.COMPLETED:
                raise InvalidPlanStateError(
                    f"Plan {plan_id} is completed and cannot be cancelled", plan_id=plan_id
                )
            previous_status = plan.status

            cancelled = 0
            skipped = 0
            for installment in snapshot.installments:
                if installment.status not in CANCELLABLE_STATUSES:
                    continue
                if is_settled(installment, snapshot.request_for(installment)):
                    skipped += 1
                    continue
                assert_transition(installment, InstallmentStatus.CANCELLED)
                installment.status = InstallmentStatus.CANCELLED
                self.store.save_installment(installment)
                cancelled += 1

            changed = self._commit_summary(snapshot, self.today(), status_override=PlanStatus.CANCELLED)
            details = CancelDetails(
                previous_status=previous_status.value,
                installments_cancelled=cancelled,
                installments_skipped=skipped
            )
            self._log(plan, details, performed_by)
            events = self._status_events(plan, previous_status) if changed else []

        self._emit(events)
        logger.info(
            f"Cancelled plan {plan_id}: {cancelled} installments cancelled",
            extra={'action': 'cancel', 'resource': plan_id, 'user_id': performed_by}
        )
        return LifecycleOutcome(plan=plan, affected=cancelled, status_changed=changed, details=details)

    def pause_plan(self, plan_id: str, performed_by: Optional[str] = None) -> LifecycleOutcome:
        """
        Pause a plan: modifiable pending/sent/overdue installments become
        paused. An installment whose request gets paid between the snapshot
        and the write is skipped.
        """
        with self.store.transaction():
            snapshot = self.store.snapshot(plan_id)
            plan = snapshot.plan
            if plan.is_terminal:
                raise InvalidPlanStateError(
                    f"Cannot pause a {plan.status.value} plan", plan_id=plan_id
                )
            previous_status = plan.status

            counts: Dict[InstallmentStatus, int] = {status: 0 for status in UNPAID_STATUSES}
            skipped = 0
            for installment in snapshot.installments:
                if installment.status not in UNPAID_STATUSES:
                    continue
                if is_settled(installment, snapshot.request_for(installment)):
                    skipped += 1
                    continue
                request_id = installment.linked_payment_request_id
                if request_id and not self.store.request_unpaid(request_id):
                    logger.warning(
                        f"Skipping installment {installment.id}: payment landed during pause",
                        extra={'action': 'pause', 'resource': plan_id}
                    )
                    skipped += 1
                    continue
                assert_transition(installment, InstallmentStatus.PAUSED)
                counts[installment.status] += 1
                installment.status = InstallmentStatus.PAUSED
                self.store.save_installment(installment)

            changed = self._commit_summary(snapshot, self.today(), status_override=PlanStatus.PAUSED)
            details = PauseDetails(
                previous_status=previous_status.value,
                paused_from_pending=counts[InstallmentStatus.PENDING],
                paused_from_sent=counts[InstallmentStatus.SENT],
                paused_from_overdue=counts[InstallmentStatus.OVERDUE],
                installments_skipped=skipped
            )
            self._log(plan, details, performed_by)
            events = self._status_events(plan, previous_status) if changed else []

        self._emit(events)
        logger.info(
            f"Paused plan {plan_id}: {details.installments_paused} installments paused",
            extra={'action': 'pause', 'resource': plan_id, 'user_id': performed_by}
        )
        return LifecycleOutcome(
            plan=plan, affected=details.installments_paused, status_changed=changed, details=details
        )

    def resume_plan(
        self,
        plan_id: str,
        resume_date: date,
        performed_by: Optional[str] = None
    ) -> LifecycleOutcome:
        """
        Resume a paused plan

        The k-th paused installment (in sequence order) is re-dated to
        resume_date advanced by k cadence periods, its open request is
        cancelled and it returns to pending. Status is re-derived and the
        overdue sweep runs.

        Raises:
            InvalidDateRangeError: resume_date falls before the due date of an
                earlier installment that keeps its date
        """
        today = self.today()
        with self.store.transaction():
            snapshot = self.store.snapshot(plan_id)
            plan = snapshot.plan
            if plan.is_terminal:
                raise InvalidPlanStateError(
                    f"Cannot resume a {plan.status.value} plan", plan_id=plan_id
                )
            previous_status = plan.status

            paused = [
                i for i in snapshot.installments
                if i.status == InstallmentStatus.PAUSED
                and not is_settled(i, snapshot.request_for(i))
            ]
            planned = {
                installment.id: advance(resume_date, plan.cadence, k)
                for k, installment in enumerate(paused)
            }
            self._check_ordering(snapshot, planned)

            resumed = 0
            requests_cancelled = 0
            skipped = 0
            for installment in snapshot.installments:
                if installment.status != InstallmentStatus.PAUSED:
                    continue
                if installment.id not in planned:
                    skipped += 1
                    continue
                request_id = installment.linked_payment_request_id
                if request_id:
                    if not self.store.cancel_request_if_unpaid(request_id):
                        skipped += 1
                        continue
                    requests_cancelled += 1
                    snapshot.requests.pop(request_id, None)
                    installment.linked_payment_request_id = None

                assert_transition(installment, InstallmentStatus.PENDING)
                installment.status = InstallmentStatus.PENDING
                installment.due_date = planned[installment.id]
                self.store.save_installment(installment)
                resumed += 1

            self._flip_past_due(snapshot, today)
            changed = self._commit_summary(snapshot, today, transitioning=True)
            details = ResumeDetails(
                resume_date=resume_date.isoformat(),
                installments_resumed=resumed,
                payment_requests_cancelled=requests_cancelled,
                new_status=plan.status.value,
                next_due_date=plan.next_due_date.isoformat() if plan.next_due_date else None,
                installments_skipped=skipped
            )
            self._log(plan, details, performed_by)
            events = self._status_events(plan, previous_status) if changed else []

        self._emit(events)
        logger.info(
            f"Resumed plan {plan_id} from {resume_date.isoformat()}: {resumed} installments",
            extra={'action': 'resume', 'resource': plan_id, 'user_id': performed_by}
        )
        return LifecycleOutcome(plan=plan, affected=resumed, status_changed=changed, details=details)

    def reschedule_plan(
        self,
        plan_id: str,
        new_start_date: date,
        performed_by: Optional[str] = None
    ) -> LifecycleOutcome:
        """
        Shift every modifiable installment by (new_start_date - start_date) days

        Settled installments keep their dates. A paused plan stays paused and
        its paused installments stay paused.

        Raises:
            InvalidDateRangeError: the shift would move an installment ahead
                of an earlier one that keeps its date
        """
        today = self.today()
        with self.store.transaction():
            snapshot = self.store.snapshot(plan_id)
            plan = snapshot.plan
            if plan.is_terminal:
                raise InvalidPlanStateError(
                    f"Cannot reschedule a {plan.status.value} plan", plan_id=plan_id
                )
            previous_status = plan.status
            previous_start = plan.start_date
            shift_days = (new_start_date - previous_start).days

            _, modifiable = snapshot.partition()
            movable = [i for i in modifiable if i.status in MOVABLE_STATUSES]
            planned = {i.id: shift_date(i.due_date, shift_days) for i in movable}
            self._check_ordering(snapshot, planned)

            paused_plan = plan.is_paused
            shifted = 0
            requests_cancelled = 0
            skipped = 0
            for installment in movable:
                request_id = installment.linked_payment_request_id
                if request_id:
                    if not self.store.cancel_request_if_unpaid(request_id):
                        skipped += 1
                        continue
                    requests_cancelled += 1
                    snapshot.requests.pop(request_id, None)
                    installment.linked_payment_request_id = None

                if installment.status == InstallmentStatus.PAUSED and paused_plan:
                    new_status = InstallmentStatus.PAUSED
                else:
                    new_status = InstallmentStatus.PENDING
                assert_transition(installment, new_status)
                installment.status = new_status
                installment.due_date = planned[installment.id]
                self.store.save_installment(installment)
                shifted += 1

            plan.start_date = new_start_date
            if paused_plan:
                changed = self._commit_summary(snapshot, today, status_override=PlanStatus.PAUSED)
            else:
                self._flip_past_due(snapshot, today)
                changed = self._commit_summary(snapshot, today, transitioning=True)

            details = RescheduleDetails(
                previous_date=previous_start.isoformat(),
                new_date=new_start_date.isoformat(),
                payments_shifted=shifted,
                payment_requests_cancelled=requests_cancelled,
                shift_days=shift_days,
                installments_skipped=skipped
            )
            self._log(plan, details, performed_by)
            events = self._status_events(plan, previous_status) if changed else []

        self._emit(events)
        logger.info(
            f"Rescheduled plan {plan_id} by {shift_days} days: {shifted} installments moved",
            extra={'action': 'reschedule', 'resource': plan_id, 'user_id': performed_by}
        )
        return LifecycleOutcome(plan=plan, affected=shifted, status_changed=changed, details=details)

    def reschedule_installment(
        self,
        installment_id: str,
        new_date: date,
        performed_by: Optional[str] = None
    ) -> LifecycleOutcome:
        """
        Move one modifiable installment to a new due date

        Raises:
            InstallmentAlreadySettledError: the installment is settled or paid
            InvalidDateRangeError: new_date falls outside its neighbours' dates
        """
        today = self.today()
        with self.store.transaction():
            target = self.store.require_installment(installment_id)
            snapshot = self.store.snapshot(target.plan_id)
            plan = snapshot.plan
            installment = next(i for i in snapshot.installments if i.id == installment_id)

            if plan.is_terminal:
                raise InvalidPlanStateError(
                    f"Cannot reschedule an installment of a {plan.status.value} plan",
                    plan_id=plan.id
                )
            require_modifiable(installment, snapshot.request_for(installment))
            if installment.status not in MOVABLE_STATUSES:
                raise InstallmentAlreadySettledError(
                    f"Installment {installment_id} is {installment.status.value}",
                    plan_id=plan.id,
                    installment_id=installment_id
                )

            self._check_ordering(snapshot, {installment.id: new_date})

            requests_cancelled = 0
            request_id = installment.linked_payment_request_id
            if request_id:
                if not self.store.cancel_request_if_unpaid(request_id):
                    raise InstallmentAlreadySettledError(
                        f"Installment {installment_id} was paid while rescheduling",
                        plan_id=plan.id,
                        installment_id=installment_id
                    )
                requests_cancelled = 1
                snapshot.requests.pop(request_id, None)
                installment.linked_payment_request_id = None

            previous_date = installment.due_date
            new_status = InstallmentStatus.PAUSED if plan.is_paused else InstallmentStatus.PENDING
            assert_transition(installment, new_status)
            installment.status = new_status
            installment.due_date = new_date
            self.store.save_installment(installment)

            previous_status = plan.status
            changed = self._commit_summary(snapshot, today)

            details = RescheduleDetails(
                previous_date=previous_date.isoformat(),
                new_date=new_date.isoformat(),
                payments_shifted=1,
                payment_requests_cancelled=requests_cancelled,
                installment_id=installment_id
            )
            self._log(plan, details, performed_by)
            events = self._status_events(plan, previous_status) if changed else []

        self._emit(events)
        logger.info(
            f"Rescheduled installment {installment_id} to {new_date.isoformat()}",
            extra={'action': 'reschedule', 'resource': plan.id, 'user_id': performed_by}
        )
        return LifecycleOutcome(plan=plan, affected=1, status_changed=changed, details=details)

    def run_overdue_sweep(self, plan_id: str, today: Optional[date] = None) -> LifecycleOutcome:
        """
        Flag past-due pending/sent installments of one plan as overdue

        Paused, cancelled and completed plans are left alone. An overdue
        activity entry is written only when something changed.
        """
        today = today or self.today()
        with self.store.transaction():
            snapshot = self.store.snapshot(plan_id)
            plan = snapshot.plan
            if plan.status in (PlanStatus.PAUSED, PlanStatus.CANCELLED, PlanStatus.COMPLETED):
                return LifecycleOutcome(plan=plan, affected=0)

            previous_status = plan.status
            flipped = self._flip_past_due(snapshot, today)
            summary = summarize(plan, snapshot.installments, snapshot.requests, today)
            refresh_needed = (
                flipped
                or summary.status != plan.status
                or summary.has_overdue_payments != plan.has_overdue_payments
            )
            if not refresh_needed:
                return LifecycleOutcome(plan=plan, affected=0)

            changed = self._commit_summary(snapshot, today)
            details = None
            if flipped:
                details = OverdueDetails(
                    installments_marked_overdue=len(flipped),
                    installment_ids=[i.id for i in flipped],
                    new_status=plan.status.value
                )
                self._log(plan, details, None)
            events = self._status_events(plan, previous_status) if changed else []

        self._emit(events)
        if flipped:
            logger.info(
                f"Marked {len(flipped)} installments overdue on plan {plan_id}",
                extra={'action': 'overdue', 'resource': plan_id}
            )
        return LifecycleOutcome(plan=plan, affected=len(flipped), status_changed=changed, details=details)

    def run_overdue_sweep_all(self, today: Optional[date] = None) -> Dict[str, int]:
        """Sweep every plan that can still go overdue"""
        today = today or self.today()
        results = {'plans_checked': 0, 'plans_updated': 0, 'installments_marked_overdue': 0}

        for plan in self.store.list_plans():
            if plan.status in (PlanStatus.PAUSED, PlanStatus.CANCELLED, PlanStatus.COMPLETED):
                continue
            results['plans_checked'] += 1
            outcome = self.run_overdue_sweep(plan.id, today)
            if outcome.affected:
                results['plans_updated'] += 1
                results['installments_marked_overdue'] += outcome.affected

        return results

    def _installment_amounts(
        self,
        total_amount: int,
        installment_amount: Optional[int],
        count: int
    ) -> List[int]:
        if count < 1:
            raise InvalidAmountError("Installment count must be at least 1")
        if total_amount <= 0:
            raise InvalidAmountError("Total amount must be positive")
        if installment_amount is None:
            if total_amount < count:
                raise InvalidAmountError("Total amount too small for installment count")
            return split_total(total_amount, count)
        if installment_amount <= 0:
            raise InvalidAmountError("Installment amount must be positive")

        # The final installment absorbs any difference from the total
        last = total_amount - installment_amount * (count - 1)
        if last <= 0:
            raise InvalidAmountError(
                f"{count} installments of {installment_amount} exceed total {total_amount}"
            )
        return [installment_amount] * (count - 1) + [last]

    @staticmethod
    def _check_ordering(snapshot: PlanSnapshot, planned: Dict[str, date]) -> None:
        """Due dates must stay non-decreasing in sequence order after the move"""
        previous: Optional[date] = None
        for installment in snapshot.installments:
            if installment.status == InstallmentStatus.CANCELLED:
                continue
            due = planned.get(installment.id, installment.due_date)
            if previous is not None and due < previous:
                raise InvalidDateRangeError(
                    f"Installment {installment.sequence_number} would fall due before "
                    f"installment {installment.sequence_number - 1}",
                    plan_id=installment.plan_id,
                    installment_id=installment.id
                )
            previous = due

"""
Plan Payments Module

Money-moving operations on plan installments: manual payments recorded by
clinic staff, processor-confirmed payments, refunds, and sending payment
requests for installments that have fallen due.
"""

import logging
import uuid
from datetime import datetime, timezone, date, timedelta
from typing import Dict, List, Optional, Tuple

from .activity import PaymentMadeDetails, PaymentRefundDetails, ReminderSentDetails
from .classifier import assert_transition, require_modifiable
from .errors import (
    InstallmentAlreadySettledError, InstallmentNotFoundError, InvalidAmountError,
    InvalidPlanStateError
)
from .lifecycle import LifecycleOutcome, PlanOperations
from .models import (
    Plan, PlanStatus, Installment, InstallmentStatus, PaymentRequest,
    PaymentRequestStatus, Payment, PaymentStatus, UNPAID_STATUSES
)
from .notifications import NotificationEvent, NotificationKind, build_events
from .status import count_paid, summarize
from .store import PlanSnapshot


logger = logging.getLogger("plan_engine.payments")


# Installment states a manual payment may settle
PAYABLE_STATUSES = UNPAID_STATUSES | {InstallmentStatus.PAUSED}


def _reference(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


class PaymentManager(PlanOperations):
    """
    Records payments and refunds against plan installments
    """

    def __init__(self, *args, reminder_lead_days: int = 0, **kwargs):
        super().__init__(*args, **kwargs)
        self.reminder_lead_days = reminder_lead_days

    def record_manual_payment(
        self,
        installment_id: str,
        performed_by: Optional[str] = None
    ) -> Tuple[LifecycleOutcome, Payment]:
        """
        Record an offline payment for one installment

        Creates the payment, marks the installment paid and attaches the
        payment to the installment's payment request (creating one if the
        installment never had a request).

        Returns:
            (outcome, payment)
        """
        today = self.today()
        with self.store.transaction():
            target = self.store.require_installment(installment_id)
            snapshot = self.store.snapshot(target.plan_id)
            plan = snapshot.plan
            installment = next(i for i in snapshot.installments if i.id == installment_id)

            if plan.status == PlanStatus.CANCELLED or installment.status == InstallmentStatus.CANCELLED:
                raise InvalidPlanStateError(
                    f"Cannot record a payment against cancelled installment {installment_id}",
                    plan_id=plan.id
                )
            require_modifiable(installment, snapshot.request_for(installment))
            if installment.status not in PAYABLE_STATUSES:
                raise InstallmentAlreadySettledError(
                    f"Installment {installment_id} is already {installment.status.value}",
                    plan_id=plan.id,
                    installment_id=installment_id
                )

            now = datetime.now(timezone.utc)
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                clinic_id=plan.clinic_id,
                patient_id=plan.patient_id,
                payment_link_id=plan.payment_link_id,
                amount_paid=installment.amount,
                payment_ref=_reference("MAN"),
                manual_payment=True,
                paid_at=now
            )
            self.store.save_payment(payment)
            self._attach_payment(snapshot, installment, payment, now)

            previous_status = plan.status
            changed = self._commit_payment_summary(snapshot, today)
            details = PaymentMadeDetails(
                payment_id=payment.id,
                payment_reference=payment.payment_ref,
                amount=payment.amount_paid,
                installment_id=installment.id,
                payment_number=installment.sequence_number,
                total_payments=installment.total_in_series,
                manual_payment=True
            )
            self._log(plan, details, performed_by)
            events = self._payment_events(plan, installment, payment)
            if changed:
                events += self._status_events(plan, previous_status)

        self._emit(events)
        logger.info(
            f"Recorded manual payment {payment.payment_ref} for installment {installment_id}",
            extra={'action': 'payment_made', 'resource': plan.id, 'user_id': performed_by}
        )
        return LifecycleOutcome(plan=plan, affected=1, status_changed=changed, details=details), payment

    def record_payment_success(
        self,
        payment_request_id: str,
        amount: Optional[int] = None,
        payment_ref: Optional[str] = None,
        performed_by: Optional[str] = None
    ) -> Tuple[Optional[LifecycleOutcome], Optional[Payment]]:
        """
        Apply a processor-confirmed payment to the request's installment

        Money already moved, so the installment is marked paid from any
        unpaid state, including paused. Re-delivery for a request that
        already carries a payment is a no-op.

        Returns:
            (outcome, payment); outcome is None when the request belongs to
            no plan, and affected is 0 on re-delivery
        """
        today = self.today()
        with self.store.transaction():
            request = self.store.require_request(payment_request_id)
            installment = self.store.find_installment_by_request(payment_request_id)

            if request.payment_id is not None:
                logger.info(f"Payment request {payment_request_id} already paid; ignoring")
                existing = self.store.get_payment(request.payment_id)
                if installment is None:
                    return None, existing
                plan = self.store.require_plan(installment.plan_id)
                return LifecycleOutcome(plan=plan, affected=0), existing

            now = datetime.now(timezone.utc)
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                clinic_id=request.clinic_id,
                patient_id=request.patient_id,
                payment_link_id=request.payment_link_id,
                amount_paid=amount if amount is not None else (
                    request.amount if request.amount is not None else (installment.amount if installment else 0)
                ),
                payment_ref=payment_ref or _reference("PAY"),
                paid_at=now
            )
            if payment.amount_paid <= 0:
                raise InvalidAmountError(
                    f"Payment amount must be positive, got {payment.amount_paid}",
                    payment_request_id=payment_request_id
                )
            self.store.save_payment(payment)

            if installment is None:
                self.store.mark_request_paid(payment_request_id, payment.id, now)
                logger.info(f"Recorded payment {payment.id} for standalone request {payment_request_id}")
                return None, payment

            snapshot = self.store.snapshot(installment.plan_id)
            plan = snapshot.plan
            installment = next(i for i in snapshot.installments if i.id == installment.id)
            if installment.status not in PAYABLE_STATUSES | {InstallmentStatus.CANCELLED}:
                raise InstallmentAlreadySettledError(
                    f"Installment {installment.id} is already {installment.status.value}",
                    plan_id=plan.id,
                    installment_id=installment.id
                )
            self._attach_payment(snapshot, installment, payment, now)

            previous_status = plan.status
            changed = self._commit_payment_summary(snapshot, today)
            details = PaymentMadeDetails(
                payment_id=payment.id,
                payment_reference=payment.payment_ref,
                amount=payment.amount_paid,
                installment_id=installment.id,
                payment_number=installment.sequence_number,
                total_payments=installment.total_in_series
            )
            self._log(plan, details, performed_by)
            events = self._payment_events(plan, installment, payment)
            if changed:
                events += self._status_events(plan, previous_status)

        self._emit(events)
        logger.info(
            f"Recorded payment {payment.payment_ref} for installment {installment.id}",
            extra={'action': 'payment_made', 'resource': plan.id}
        )
        return LifecycleOutcome(plan=plan, affected=1, status_changed=changed, details=details), payment

    def record_refund(
        self,
        payment_id: str,
        amount: int,
        is_full_refund: bool,
        performed_by: Optional[str] = None
    ) -> LifecycleOutcome:
        """
        Refund all or part of a payment

        A full refund no longer counts the installment as paid, so a
        completed plan drops back to active.

        Raises:
            InvalidAmountError: amount is not positive or exceeds what is
                left to refund
        """
        today = self.today()
        with self.store.transaction():
            payment = self.store.require_payment(payment_id)
            if payment.status == PaymentStatus.REFUNDED:
                raise InvalidPlanStateError(f"Payment {payment_id} is already fully refunded")

            already_refunded = payment.refund_amount or 0
            refundable = payment.amount_paid - already_refunded
            if amount <= 0 or amount > refundable:
                raise InvalidAmountError(
                    f"Refund amount {amount} must be between 1 and {refundable}",
                    payment_id=payment_id
                )

            target = self.store.find_installment_by_payment(payment_id)
            if target is None:
                raise InstallmentNotFoundError(
                    f"No installment is linked to payment {payment_id}", payment_id=payment_id
                )
            snapshot = self.store.snapshot(target.plan_id)
            plan = snapshot.plan
            installment = next(i for i in snapshot.installments if i.id == target.id)

            now = datetime.now(timezone.utc)
            payment.refund_amount = already_refunded + amount
            payment.refunded_at = now
            full = is_full_refund or payment.refund_amount == payment.amount_paid
            payment.status = PaymentStatus.REFUNDED if full else PaymentStatus.PARTIALLY_REFUNDED
            self.store.save_payment(payment)

            new_status = InstallmentStatus.REFUNDED if full else InstallmentStatus.PARTIALLY_REFUNDED
            assert_transition(installment, new_status)
            installment.status = new_status
            self.store.save_installment(installment)

            # A completed plan that is no longer fully paid goes back to active,
            # even when no installment is left counting as paid
            reopened = (
                plan.status == PlanStatus.COMPLETED
                and count_paid(snapshot.installments) < plan.total_installments
            )
            changed = self._commit_summary(
                snapshot, today, status_override=PlanStatus.ACTIVE if reopened else None
            )
            details = PaymentRefundDetails(
                payment_id=payment.id,
                payment_reference=payment.payment_ref,
                original_amount=payment.amount_paid,
                refund_amount=amount,
                is_full_refund=full,
                installment_id=installment.id
            )
            self._log(plan, details, performed_by)

        logger.info(
            f"Refunded {amount} of payment {payment.payment_ref} ({'full' if full else 'partial'})",
            extra={'action': 'payment_refund', 'resource': plan.id, 'user_id': performed_by}
        )
        return LifecycleOutcome(plan=plan, affected=1, status_changed=changed, details=details)

    def send_due_payment_requests(self, today: Optional[date] = None) -> Dict[str, int]:
        """
        Send payment requests for pending installments that have fallen due

        Installments due within reminder_lead_days of today are included.
        Paused, cancelled and completed plans are skipped.
        """
        today = today or self.today()
        horizon = today + timedelta(days=self.reminder_lead_days)
        results = {'plans_checked': 0, 'requests_sent': 0}

        for plan in self.store.list_plans():
            if plan.status in (PlanStatus.PAUSED, PlanStatus.CANCELLED, PlanStatus.COMPLETED):
                continue
            results['plans_checked'] += 1
            results['requests_sent'] += self._send_plan_requests(plan.id, horizon)

        return results

    def send_payment_reminder(
        self,
        installment_id: str,
        performed_by: Optional[str] = None
    ) -> LifecycleOutcome:
        """Re-notify the patient about one unpaid installment"""
        with self.store.transaction():
            installment = self.store.require_installment(installment_id)
            plan = self.store.require_plan(installment.plan_id)
            if plan.status in (PlanStatus.PAUSED, PlanStatus.CANCELLED):
                raise InvalidPlanStateError(
                    f"Cannot send reminders for a {plan.status.value} plan", plan_id=plan.id
                )
            if installment.status not in UNPAID_STATUSES:
                raise InstallmentAlreadySettledError(
                    f"Installment {installment_id} is {installment.status.value}",
                    plan_id=plan.id,
                    installment_id=installment_id
                )

            details = ReminderSentDetails(
                installment_id=installment.id,
                payment_number=installment.sequence_number,
                amount=installment.amount,
                due_date=installment.due_date.isoformat(),
                payment_request_id=installment.linked_payment_request_id
            )
            self._log(plan, details, performed_by)
            events = self._reminder_events(plan, installment)

        self._emit(events)
        return LifecycleOutcome(plan=plan, affected=1, details=details)

    def _send_plan_requests(self, plan_id: str, horizon: date) -> int:
        sent: List[Installment] = []
        with self.store.transaction():
            snapshot = self.store.snapshot(plan_id)
            plan = snapshot.plan
            now = datetime.now(timezone.utc)

            for installment in snapshot.installments:
                if installment.status != InstallmentStatus.PENDING:
                    continue
                if installment.linked_payment_request_id or installment.due_date > horizon:
                    continue

                request = PaymentRequest(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    clinic_id=plan.clinic_id,
                    patient_id=plan.patient_id,
                    payment_link_id=plan.payment_link_id,
                    amount=installment.amount,
                    sent_at=now
                )
                self.store.save_request(request)
                snapshot.requests[request.id] = request

                assert_transition(installment, InstallmentStatus.SENT)
                installment.status = InstallmentStatus.SENT
                installment.linked_payment_request_id = request.id
                self.store.save_installment(installment)

                self._log(plan, ReminderSentDetails(
                    installment_id=installment.id,
                    payment_number=installment.sequence_number,
                    amount=installment.amount,
                    due_date=installment.due_date.isoformat(),
                    payment_request_id=request.id
                ), None)
                sent.append(installment)

            if sent:
                self._commit_summary(snapshot, self.today())

        events: List[NotificationEvent] = []
        for installment in sent:
            events += self._reminder_events(plan, installment)
        self._emit(events)

        if sent:
            logger.info(
                f"Sent {len(sent)} payment requests for plan {plan_id}",
                extra={'action': 'reminder_sent', 'resource': plan_id}
            )
        return len(sent)

    def _attach_payment(
        self,
        snapshot: PlanSnapshot,
        installment: Installment,
        payment: Payment,
        paid_at: datetime
    ) -> None:
        """Mark the installment paid and put the payment on its request"""
        plan = snapshot.plan
        request = snapshot.request_for(installment)

        if request is not None:
            if not self.store.mark_request_paid(request.id, payment.id, paid_at):
                raise InstallmentAlreadySettledError(
                    f"Payment request {request.id} was paid concurrently",
                    plan_id=plan.id,
                    installment_id=installment.id
                )
            request.status = PaymentRequestStatus.PAID
            request.payment_id = payment.id
            request.paid_at = paid_at
        else:
            request = PaymentRequest(
                id=str(uuid.uuid4()),
                created_at=paid_at,
                updated_at=paid_at,
                clinic_id=plan.clinic_id,
                patient_id=plan.patient_id,
                payment_link_id=plan.payment_link_id,
                status=PaymentRequestStatus.PAID,
                amount=payment.amount_paid,
                payment_id=payment.id,
                paid_at=paid_at
            )
            self.store.save_request(request)
            installment.linked_payment_request_id = request.id

        snapshot.requests[request.id] = request
        self._mark_installment_paid(installment, payment)

    def _mark_installment_paid(self, installment: Installment, payment: Payment) -> None:
        assert_transition(installment, InstallmentStatus.PAID)
        installment.status = InstallmentStatus.PAID
        installment.linked_payment_id = payment.id
        self.store.save_installment(installment)

    def _commit_payment_summary(self, snapshot: PlanSnapshot, today: date) -> bool:
        """A paused plan that collects its last installment completes"""
        plan = snapshot.plan
        if plan.status != PlanStatus.CANCELLED and count_paid(snapshot.installments) >= plan.total_installments:
            return self._commit_summary(snapshot, today, status_override=PlanStatus.COMPLETED)
        return self._commit_summary(snapshot, today)

    def _payment_events(self, plan: Plan, installment: Installment, payment: Payment) -> List[NotificationEvent]:
        patient, clinic = self.store.contacts_for(plan)
        return build_events(
            NotificationKind.PAYMENT_MADE, plan, patient, clinic,
            installment=installment,
            amount=payment.amount_paid,
            details={'payment_id': payment.id, 'payment_reference': payment.payment_ref}
        )

    def _reminder_events(self, plan: Plan, installment: Installment) -> List[NotificationEvent]:
        patient, _ = self.store.contacts_for(plan)
        # Reminders go to the patient only
        return build_events(NotificationKind.REMINDER_SENT, plan, patient, None, installment=installment)

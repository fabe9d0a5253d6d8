"""
Payment Plan Engine

Single entry point for callers (HTTP routes, webhook handlers, schedulers).
Wires storage, the activity log and notifications together and reports every
mutating operation as an OperationResult: domain rejections become failed
results after the transaction has rolled back, anything else propagates.
"""

import logging
from datetime import date
from typing import Callable, Dict, List, Optional, Union

from .activity import Activity, ActivityLog
from .config import PlanEngineConfig, get_config
from .errors import OperationResult, PlanEngineError
from .lifecycle import LifecycleOutcome, PlanLifecycleManager
from .models import Plan, PlanStatus, Installment, Payment
from .notifications import NotificationDispatcher, NotificationEmitter, create_dispatcher
from .payments import PaymentManager
from .schedule import Cadence
from .status import resolve_status
from .storage import StorageInterface, create_storage
from .store import PlanStore


logger = logging.getLogger("plan_engine.engine")


class PlanEngine:
    """
    Payment plan lifecycle engine

    Every operation takes the acting user explicitly as performed_by; None
    means a system action.
    """

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[PlanEngineConfig] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Optional[Callable[[], date]] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.store = PlanStore(self.storage)
        self.activity_log = ActivityLog(self.storage) if self.config.enable_activity_log else None

        if dispatcher is None and self.config.notifications_enabled:
            dispatcher = create_dispatcher(
                self.config.notification_webhook_url, self.config.notification_timeout_seconds
            )
        self.emitter = NotificationEmitter(
            dispatcher,
            timeout_seconds=self.config.notification_timeout_seconds,
            enabled=self.config.notifications_enabled
        )

        self.lifecycle = PlanLifecycleManager(self.store, self.activity_log, self.emitter, clock)
        self.payments = PaymentManager(
            self.store, self.activity_log, self.emitter, clock,
            reminder_lead_days=self.config.reminder_lead_days
        )

    def _run(self, operation: str, action: Callable[[], LifecycleOutcome]) -> OperationResult:
        try:
            outcome = action()
        except PlanEngineError as e:
            logger.warning(
                f"{operation} rejected: {e.kind.value}: {e.message}",
                extra={'action': operation, 'resource': e.context.get('plan_id'), 'error_kind': e.kind.value}
            )
            return OperationResult.failure(e)
        return self._result(outcome)

    @staticmethod
    def _result(outcome: LifecycleOutcome, payment_id: Optional[str] = None) -> OperationResult:
        return OperationResult.success(
            plan_id=outcome.plan.id,
            affected_installments=outcome.affected,
            status=outcome.plan.status.value,
            payment_id=payment_id
        )

    # Lifecycle operations

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
    ) -> OperationResult:
        return self._run("create", lambda: self.lifecycle.create_plan(
            clinic_id, patient_id, link_id, title, total_amount, installment_amount,
            count, cadence, start_date, performed_by=performed_by
        ))

    def cancel_plan(self, plan_id: str, performed_by: Optional[str] = None) -> OperationResult:
        return self._run("cancel", lambda: self.lifecycle.cancel_plan(plan_id, performed_by))

    def pause_plan(self, plan_id: str, performed_by: Optional[str] = None) -> OperationResult:
        return self._run("pause", lambda: self.lifecycle.pause_plan(plan_id, performed_by))

    def resume_plan(self, plan_id: str, resume_date: date,
                    performed_by: Optional[str] = None) -> OperationResult:
        return self._run("resume", lambda: self.lifecycle.resume_plan(plan_id, resume_date, performed_by))

    def reschedule_plan(self, plan_id: str, new_start_date: date,
                        performed_by: Optional[str] = None) -> OperationResult:
        return self._run(
            "reschedule", lambda: self.lifecycle.reschedule_plan(plan_id, new_start_date, performed_by)
        )

    def reschedule_installment(self, installment_id: str, new_date: date,
                               performed_by: Optional[str] = None) -> OperationResult:
        return self._run(
            "reschedule",
            lambda: self.lifecycle.reschedule_installment(installment_id, new_date, performed_by)
        )

    def record_manual_payment(self, installment_id: str,
                              performed_by: Optional[str] = None) -> OperationResult:
        try:
            outcome, payment = self.payments.record_manual_payment(installment_id, performed_by)
        except PlanEngineError as e:
            logger.warning(f"payment_made rejected: {e.kind.value}: {e.message}")
            return OperationResult.failure(e)
        return self._result(outcome, payment_id=payment.id)

    def record_refund(self, payment_id: str, amount: int, is_full_refund: bool,
                      performed_by: Optional[str] = None) -> OperationResult:
        return self._run(
            "payment_refund",
            lambda: self.payments.record_refund(payment_id, amount, is_full_refund, performed_by)
        )

    def record_payment_success(
        self,
        payment_request_id: str,
        amount: Optional[int] = None,
        payment_ref: Optional[str] = None
    ) -> OperationResult:
        """Processor confirmed a payment; safe to call more than once"""
        try:
            outcome, payment = self.payments.record_payment_success(payment_request_id, amount, payment_ref)
        except PlanEngineError as e:
            logger.warning(f"payment_made rejected: {e.kind.value}: {e.message}")
            return OperationResult.failure(e)
        payment_id = payment.id if payment else None
        if outcome is None:
            return OperationResult.success(affected_installments=0, payment_id=payment_id)
        return self._result(outcome, payment_id=payment_id)

    def send_payment_reminder(self, installment_id: str,
                              performed_by: Optional[str] = None) -> OperationResult:
        return self._run(
            "reminder_sent", lambda: self.payments.send_payment_reminder(installment_id, performed_by)
        )

    def resolve_status(self, plan_id: str) -> PlanStatus:
        """
        Derived status of a plan as of today; read-only

        Raises:
            PlanNotFoundError: unknown plan
        """
        snapshot = self.store.snapshot(plan_id)
        return resolve_status(
            snapshot.plan, snapshot.installments, snapshot.requests, self.lifecycle.today()
        )

    # Scheduled jobs

    def run_overdue_sweep(self, plan_id: str, today: Optional[date] = None) -> OperationResult:
        return self._run("overdue", lambda: self.lifecycle.run_overdue_sweep(plan_id, today))

    def run_overdue_sweep_all(self, today: Optional[date] = None) -> Dict[str, int]:
        return self.lifecycle.run_overdue_sweep_all(today)

    def send_due_payment_requests(self, today: Optional[date] = None) -> Dict[str, int]:
        return self.payments.send_due_payment_requests(today)

    # Read models

    def get_plan(self, plan_id: str) -> Plan:
        return self.store.require_plan(plan_id)

    def list_plans(self, status: Optional[PlanStatus] = None) -> List[Plan]:
        return self.store.list_plans(status)

    def list_installments(self, plan_id: str) -> List[Installment]:
        self.store.require_plan(plan_id)
        return self.store.get_installments(plan_id)

    def list_payments(self, plan_id: str) -> List[Payment]:
        payments = []
        for installment in self.list_installments(plan_id):
            if installment.linked_payment_id:
                payment = self.store.get_payment(installment.linked_payment_id)
                if payment:
                    payments.append(payment)
        return payments

    def get_activity(self, plan_id: str, limit: Optional[int] = None) -> List[Activity]:
        self.store.require_plan(plan_id)
        if self.activity_log is None:
            return []
        return self.activity_log.get_plan_activity(plan_id, limit)

    def verify_activity_integrity(self) -> Dict:
        if self.activity_log is None:
            return {'valid': True, 'total_entries': 0, 'hash_errors': [], 'chain_breaks': []}
        return self.activity_log.verify_integrity()

    # Contacts

    def set_patient_contact(self, patient_id: str, email: Optional[str] = None,
                            phone: Optional[str] = None) -> None:
        self.store.save_contact(PlanStore.PATIENTS, patient_id, email, phone)

    def set_clinic_contact(self, clinic_id: str, email: Optional[str] = None,
                           phone: Optional[str] = None) -> None:
        self.store.save_contact(PlanStore.CLINICS, clinic_id, email, phone)

    def close(self) -> None:
        self.emitter.shutdown()
        self.storage.close()

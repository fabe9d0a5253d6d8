"""
Plan Store

Typed access to plans, installments, payment requests and payments on top of
a StorageInterface. Lifecycle operations read one PlanSnapshot inside a
transaction and write back through the compare-and-set helpers here.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from .classifier import partition
from .errors import (
    PlanNotFoundError, InstallmentNotFoundError, PaymentNotFoundError,
    PaymentRequestNotFoundError, StoreConflictError
)
from .models import (
    Plan, PlanStatus, Installment, PaymentRequest, PaymentRequestStatus,
    Payment, ContactInfo
)
from .storage import StorageInterface


logger = logging.getLogger("plan_engine.store")


@dataclass
class PlanSnapshot:
    """A plan with all its installments and their linked requests, read together"""
    plan: Plan
    installments: List[Installment]
    requests: Dict[str, PaymentRequest]

    def request_for(self, installment: Installment) -> Optional[PaymentRequest]:
        if not installment.linked_payment_request_id:
            return None
        return self.requests.get(installment.linked_payment_request_id)

    def partition(self) -> Tuple[List[Installment], List[Installment]]:
        return partition(self.installments, self.requests)


class PlanStore:
    """Persistence for the payment plan aggregate"""

    PLANS = "plans"
    INSTALLMENTS = "payment_schedule"
    REQUESTS = "payment_requests"
    PAYMENTS = "payments"
    PATIENTS = "patients"
    CLINICS = "clinics"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def transaction(self):
        """One atomic unit of work"""
        return self.storage.atomic()

    # Plans

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        data = self.storage.load(self.PLANS, plan_id)
        return Plan.from_dict(data) if data else None

    def require_plan(self, plan_id: str) -> Plan:
        plan = self.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found", plan_id=plan_id)
        return plan

    def list_plans(self, status: Optional[PlanStatus] = None) -> List[Plan]:
        if status is None:
            rows = self.storage.load_all(self.PLANS)
        else:
            rows = self.storage.find(self.PLANS, {'status': status.value})
        plans = [Plan.from_dict(row) for row in rows]
        plans.sort(key=lambda p: p.created_at)
        return plans

    def insert_plan(self, plan: Plan) -> None:
        if self.storage.exists(self.PLANS, plan.id):
            raise StoreConflictError(f"Plan {plan.id} already exists", plan_id=plan.id)
        plan.version = 1
        self.storage.save(self.PLANS, plan.id, plan.to_dict())

    def save_plan(self, plan: Plan) -> None:
        """
        Write the plan if nobody else has written it since it was read

        Raises:
            StoreConflictError: stored version differs from plan.version
        """
        expected_version = plan.version
        plan.version = expected_version + 1
        plan.updated_at = datetime.now(timezone.utc)

        written = self.storage.update_where(
            self.PLANS, plan.id, {'version': expected_version}, plan.to_dict()
        )
        if not written:
            plan.version = expected_version
            logger.warning(f"Version conflict writing plan {plan.id} (expected v{expected_version})")
            raise StoreConflictError(
                f"Plan {plan.id} was modified concurrently",
                plan_id=plan.id,
                expected_version=expected_version
            )

    # Installments

    def get_installment(self, installment_id: str) -> Optional[Installment]:
        data = self.storage.load(self.INSTALLMENTS, installment_id)
        return Installment.from_dict(data) if data else None

    def require_installment(self, installment_id: str) -> Installment:
        installment = self.get_installment(installment_id)
        if installment is None:
            raise InstallmentNotFoundError(
                f"Installment {installment_id} not found", installment_id=installment_id
            )
        return installment

    def get_installments(self, plan_id: str) -> List[Installment]:
        installments = [
            Installment.from_dict(row)
            for row in self.storage.find(self.INSTALLMENTS, {'plan_id': plan_id})
        ]
        installments.sort(key=lambda i: i.sequence_number)
        return installments

    def find_installment_by_request(self, payment_request_id: str) -> Optional[Installment]:
        rows = self.storage.find(self.INSTALLMENTS, {'payment_request_id': payment_request_id})
        return Installment.from_dict(rows[0]) if rows else None

    def find_installment_by_payment(self, payment_id: str) -> Optional[Installment]:
        """Installment a payment settled, via its own link or its request's"""
        rows = self.storage.find(self.INSTALLMENTS, {'payment_id': payment_id})
        if rows:
            return Installment.from_dict(rows[0])
        for request_row in self.storage.find(self.REQUESTS, {'payment_id': payment_id}):
            installment = self.find_installment_by_request(request_row['id'])
            if installment:
                return installment
        return None

    def save_installment(self, installment: Installment) -> None:
        installment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.INSTALLMENTS, installment.id, installment.to_dict())

    # Payment requests

    def get_request(self, request_id: str) -> Optional[PaymentRequest]:
        data = self.storage.load(self.REQUESTS, request_id)
        return PaymentRequest.from_dict(data) if data else None

    def require_request(self, request_id: str) -> PaymentRequest:
        request = self.get_request(request_id)
        if request is None:
            raise PaymentRequestNotFoundError(
                f"Payment request {request_id} not found", payment_request_id=request_id
            )
        return request

    def get_requests(self, installments: List[Installment]) -> Dict[str, PaymentRequest]:
        requests: Dict[str, PaymentRequest] = {}
        for installment in installments:
            request_id = installment.linked_payment_request_id
            if request_id and request_id not in requests:
                request = self.get_request(request_id)
                if request:
                    requests[request_id] = request
        return requests

    def save_request(self, request: PaymentRequest) -> None:
        request.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.REQUESTS, request.id, request.to_dict())

    def request_unpaid(self, request_id: str) -> bool:
        """Write-time check that no payment has landed on the request"""
        return self.storage.update_where(self.REQUESTS, request_id, {'payment_id': None}, {})

    def cancel_request_if_unpaid(self, request_id: str) -> bool:
        """
        Cancel a payment request only while it carries no payment id

        Returns:
            True when the request was cancelled or no longer exists, False
            when a payment landed on it first
        """
        if not self.storage.exists(self.REQUESTS, request_id):
            return True
        return self.storage.update_where(
            self.REQUESTS,
            request_id,
            {'payment_id': None},
            {
                'status': PaymentRequestStatus.CANCELLED.value,
                'updated_at': datetime.now(timezone.utc).isoformat()
            }
        )

    def mark_request_paid(self, request_id: str, payment_id: str, paid_at: datetime) -> bool:
        """Attach a payment to a request unless another payment got there first"""
        return self.storage.update_where(
            self.REQUESTS,
            request_id,
            {'payment_id': None},
            {
                'status': PaymentRequestStatus.PAID.value,
                'payment_id': payment_id,
                'paid_at': paid_at.isoformat(),
                'updated_at': paid_at.isoformat()
            }
        )

    # Payments

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.PAYMENTS, payment_id)
        return Payment.from_dict(data) if data else None

    def require_payment(self, payment_id: str) -> Payment:
        payment = self.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
        return payment

    def save_payment(self, payment: Payment) -> None:
        payment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.PAYMENTS, payment.id, payment.to_dict())

    # Contacts

    def save_contact(self, table: str, record_id: str, email: Optional[str] = None,
                     phone: Optional[str] = None) -> None:
        self.storage.save(table, record_id, {'id': record_id, 'email': email, 'phone': phone})

    def get_contact(self, table: str, record_id: str) -> ContactInfo:
        data = self.storage.load(table, record_id) or {}
        return ContactInfo(email=data.get('email'), phone=data.get('phone'))

    def contacts_for(self, plan: Plan) -> Tuple[ContactInfo, ContactInfo]:
        """(patient, clinic) contact info for a plan"""
        return (
            self.get_contact(self.PATIENTS, plan.patient_id),
            self.get_contact(self.CLINICS, plan.clinic_id)
        )

    # Snapshots

    def snapshot(self, plan_id: str) -> PlanSnapshot:
        plan = self.require_plan(plan_id)
        installments = self.get_installments(plan_id)
        return PlanSnapshot(plan=plan, installments=installments, requests=self.get_requests(installments))

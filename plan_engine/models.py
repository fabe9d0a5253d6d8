"""
Payment Plan Domain Records

Plans, installments (payment schedule rows), payment requests and payments.
Python attribute names follow the domain; to_dict/from_dict translate to the
persisted column names (payment_frequency, payment_number, ...).
"""

from datetime import datetime, date
from dataclasses import dataclass
from typing import Any, Dict, Optional
from enum import Enum

from .schedule import Cadence
from .storage import StorageRecord


class PlanStatus(Enum):
    """Aggregate plan states"""
    PENDING = "pending"        # Nothing paid yet
    ACTIVE = "active"          # At least one payment made, nothing overdue
    OVERDUE = "overdue"        # A modifiable installment is past due
    PAUSED = "paused"          # Suspended by an explicit pause
    COMPLETED = "completed"    # Every installment paid
    CANCELLED = "cancelled"    # Terminated by an explicit cancel


class InstallmentStatus(Enum):
    """Payment schedule row states"""
    PENDING = "pending"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentRequestStatus(Enum):
    SENT = "sent"
    PAID = "paid"
    CANCELLED = "cancelled"


class PaymentStatus(Enum):
    PAID = "paid"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


# Sticky plan states only lifecycle operations may set
EXPLICIT_PLAN_STATUSES = frozenset({PlanStatus.PAUSED, PlanStatus.CANCELLED})

# States an unpaid installment can be collected from
UNPAID_STATUSES = frozenset({
    InstallmentStatus.PENDING,
    InstallmentStatus.SENT,
    InstallmentStatus.OVERDUE,
})


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Plan(StorageRecord):
    """An agreement to collect a fixed number of installments from a patient"""
    clinic_id: str
    patient_id: str
    payment_link_id: Optional[str]
    title: str
    total_amount: int                   # Minor units
    installment_amount: int
    total_installments: int
    cadence: Cadence
    start_date: date
    status: PlanStatus = PlanStatus.PENDING
    paid_installments: int = 0
    progress: int = 0                   # Percent, cached
    next_due_date: Optional[date] = None
    has_overdue_payments: bool = False
    created_by: Optional[str] = None
    version: int = 0                    # Optimistic concurrency counter

    @property
    def is_terminal(self) -> bool:
        return self.status in (PlanStatus.COMPLETED, PlanStatus.CANCELLED)

    @property
    def is_paused(self) -> bool:
        return self.status == PlanStatus.PAUSED

    @property
    def remaining_installments(self) -> int:
        return self.total_installments - self.paid_installments

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'clinic_id': self.clinic_id,
            'patient_id': self.patient_id,
            'payment_link_id': self.payment_link_id,
            'title': self.title,
            'total_amount': self.total_amount,
            'installment_amount': self.installment_amount,
            'total_installments': self.total_installments,
            'paid_installments': self.paid_installments,
            'progress': self.progress,
            'payment_frequency': self.cadence.value,
            'start_date': _iso(self.start_date),
            'next_due_date': _iso(self.next_due_date),
            'status': self.status.value,
            'has_overdue_payments': self.has_overdue_payments,
            'created_by': self.created_by,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Plan':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            clinic_id=data['clinic_id'],
            patient_id=data['patient_id'],
            payment_link_id=data.get('payment_link_id'),
            title=data['title'],
            total_amount=data['total_amount'],
            installment_amount=data['installment_amount'],
            total_installments=data['total_installments'],
            cadence=Cadence(data['payment_frequency']),
            start_date=date.fromisoformat(data['start_date']),
            status=PlanStatus(data['status']),
            paid_installments=data.get('paid_installments', 0),
            progress=data.get('progress', 0),
            next_due_date=_parse_date(data.get('next_due_date')),
            has_overdue_payments=data.get('has_overdue_payments', False),
            created_by=data.get('created_by'),
            version=data.get('version', 0),
        )


@dataclass
class Installment(StorageRecord):
    """One scheduled charge within a plan (a payment schedule row)"""
    plan_id: str
    clinic_id: str
    patient_id: str
    payment_link_id: Optional[str]
    sequence_number: int
    total_in_series: int
    amount: int
    due_date: date
    status: InstallmentStatus = InstallmentStatus.PENDING
    linked_payment_request_id: Optional[str] = None
    linked_payment_id: Optional[str] = None

    @property
    def is_unpaid(self) -> bool:
        return self.status in UNPAID_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'plan_id': self.plan_id,
            'clinic_id': self.clinic_id,
            'patient_id': self.patient_id,
            'payment_link_id': self.payment_link_id,
            'amount': self.amount,
            'due_date': _iso(self.due_date),
            'payment_number': self.sequence_number,
            'total_payments': self.total_in_series,
            'status': self.status.value,
            'payment_request_id': self.linked_payment_request_id,
            'payment_id': self.linked_payment_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            plan_id=data['plan_id'],
            clinic_id=data['clinic_id'],
            patient_id=data['patient_id'],
            payment_link_id=data.get('payment_link_id'),
            sequence_number=data['payment_number'],
            total_in_series=data['total_payments'],
            amount=data['amount'],
            due_date=date.fromisoformat(data['due_date']),
            status=InstallmentStatus(data['status']),
            linked_payment_request_id=data.get('payment_request_id'),
            linked_payment_id=data.get('payment_id'),
        )


@dataclass
class PaymentRequest(StorageRecord):
    """An invitation sent to the patient to pay one installment"""
    clinic_id: str
    patient_id: str
    payment_link_id: Optional[str]
    status: PaymentRequestStatus = PaymentRequestStatus.SENT
    amount: Optional[int] = None
    payment_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        """Money moved against this request"""
        return self.payment_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'clinic_id': self.clinic_id,
            'patient_id': self.patient_id,
            'payment_link_id': self.payment_link_id,
            'status': self.status.value,
            'amount': self.amount,
            'payment_id': self.payment_id,
            'sent_at': self.sent_at.isoformat() if self.sent_at else None,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentRequest':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            clinic_id=data['clinic_id'],
            patient_id=data['patient_id'],
            payment_link_id=data.get('payment_link_id'),
            status=PaymentRequestStatus(data['status']),
            amount=data.get('amount'),
            payment_id=data.get('payment_id'),
            sent_at=_parse_datetime(data.get('sent_at')),
            paid_at=_parse_datetime(data.get('paid_at')),
        )


@dataclass
class Payment(StorageRecord):
    """A settled charge; only the refund fields change after creation"""
    clinic_id: str
    patient_id: str
    payment_link_id: Optional[str]
    amount_paid: int
    payment_ref: str
    status: PaymentStatus = PaymentStatus.PAID
    manual_payment: bool = False
    paid_at: Optional[datetime] = None
    refund_amount: Optional[int] = None
    refunded_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'clinic_id': self.clinic_id,
            'patient_id': self.patient_id,
            'payment_link_id': self.payment_link_id,
            'amount_paid': self.amount_paid,
            'payment_ref': self.payment_ref,
            'status': self.status.value,
            'manual_payment': self.manual_payment,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
            'refund_amount': self.refund_amount,
            'refunded_at': self.refunded_at.isoformat() if self.refunded_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            clinic_id=data['clinic_id'],
            patient_id=data['patient_id'],
            payment_link_id=data.get('payment_link_id'),
            amount_paid=data['amount_paid'],
            payment_ref=data['payment_ref'],
            status=PaymentStatus(data['status']),
            manual_payment=data.get('manual_payment', False),
            paid_at=_parse_datetime(data.get('paid_at')),
            refund_amount=data.get('refund_amount'),
            refunded_at=_parse_datetime(data.get('refunded_at')),
        )


@dataclass
class ContactInfo:
    """Contact channels on file for a patient or clinic"""
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def has_email(self) -> bool:
        return bool(self.email)

    @property
    def has_phone(self) -> bool:
        return bool(self.phone)

"""
Plan Activity Log

Append-only, hash-chained record of every lifecycle mutation, keyed by plan.
Each action type has its own typed details payload; serialization dispatches
on the action type so no caller reads loosely-typed dictionaries.
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone, date
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union

from .models import Plan
from .storage import StorageInterface, StorageRecord


class ActivityType(Enum):
    """Kinds of plan activity"""
    CREATE = "create"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    RESCHEDULE = "reschedule"
    PAYMENT_MADE = "payment_made"
    PAYMENT_REFUND = "payment_refund"
    REMINDER_SENT = "reminder_sent"
    OVERDUE = "overdue"


def _plain(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


@dataclass
class ActivityDetails:
    """Base for the per-action detail payloads"""
    action_type = None  # set on each subclass

    def to_dict(self) -> Dict[str, Any]:
        return {k: _plain(v) for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ActivityDetails':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class CreateDetails(ActivityDetails):
    title: str
    total_amount: int
    installment_amount: int
    total_installments: int
    cadence: str
    start_date: str
    action_type = ActivityType.CREATE


@dataclass
class CancelDetails(ActivityDetails):
    previous_status: str
    installments_cancelled: int
    installments_skipped: int = 0
    action_type = ActivityType.CANCEL


@dataclass
class PauseDetails(ActivityDetails):
    previous_status: str
    paused_from_pending: int = 0
    paused_from_sent: int = 0
    paused_from_overdue: int = 0
    installments_skipped: int = 0
    action_type = ActivityType.PAUSE

    @property
    def installments_paused(self) -> int:
        return self.paused_from_pending + self.paused_from_sent + self.paused_from_overdue


@dataclass
class ResumeDetails(ActivityDetails):
    resume_date: str
    installments_resumed: int
    payment_requests_cancelled: int
    new_status: str
    next_due_date: Optional[str] = None
    installments_skipped: int = 0
    action_type = ActivityType.RESUME


@dataclass
class RescheduleDetails(ActivityDetails):
    previous_date: str
    new_date: str
    payments_shifted: int
    payment_requests_cancelled: int
    shift_days: Optional[int] = None
    installment_id: Optional[str] = None     # Set when a single installment moved
    installments_skipped: int = 0
    action_type = ActivityType.RESCHEDULE


@dataclass
class PaymentMadeDetails(ActivityDetails):
    payment_id: str
    payment_reference: str
    amount: int
    installment_id: str
    payment_number: int
    total_payments: int
    manual_payment: bool = False
    action_type = ActivityType.PAYMENT_MADE


@dataclass
class PaymentRefundDetails(ActivityDetails):
    payment_id: str
    payment_reference: str
    original_amount: int
    refund_amount: int
    is_full_refund: bool
    installment_id: Optional[str] = None
    action_type = ActivityType.PAYMENT_REFUND


@dataclass
class ReminderSentDetails(ActivityDetails):
    installment_id: str
    payment_number: int
    amount: int
    due_date: str
    payment_request_id: Optional[str] = None
    action_type = ActivityType.REMINDER_SENT


@dataclass
class OverdueDetails(ActivityDetails):
    installments_marked_overdue: int
    installment_ids: List[str] = field(default_factory=list)
    new_status: Optional[str] = None
    action_type = ActivityType.OVERDUE


DETAIL_TYPES: Dict[ActivityType, Type[ActivityDetails]] = {
    ActivityType.CREATE: CreateDetails,
    ActivityType.PAUSE: PauseDetails,
    ActivityType.RESUME: ResumeDetails,
    ActivityType.CANCEL: CancelDetails,
    ActivityType.RESCHEDULE: RescheduleDetails,
    ActivityType.PAYMENT_MADE: PaymentMadeDetails,
    ActivityType.PAYMENT_REFUND: PaymentRefundDetails,
    ActivityType.REMINDER_SENT: ReminderSentDetails,
    ActivityType.OVERDUE: OverdueDetails,
}


def details_from_dict(action_type: ActivityType, data: Dict[str, Any]) -> ActivityDetails:
    """Rebuild the typed payload for an action type"""
    try:
        detail_type = DETAIL_TYPES[action_type]
    except KeyError:
        raise ValueError(f"No details type registered for {action_type}")
    return detail_type.from_dict(data)


@dataclass
class Activity(StorageRecord):
    """
    Immutable plan activity entry with hash chaining for tamper detection
    """
    plan_id: str
    clinic_id: str
    patient_id: str
    payment_link_id: Optional[str]
    action_type: ActivityType
    details: ActivityDetails
    sequence: int
    previous_hash: str
    current_hash: str
    performed_by_user_id: Optional[str] = None   # None for system actions

    @property
    def performed_at(self) -> datetime:
        return self.created_at

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'plan_id': self.plan_id,
            'action_type': self.action_type.value,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'performed_by_user_id': self.performed_by_user_id,
            'details': self.details.to_dict()
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'plan_id': self.plan_id,
            'clinic_id': self.clinic_id,
            'patient_id': self.patient_id,
            'payment_link_id': self.payment_link_id,
            'action_type': self.action_type.value,
            'performed_by_user_id': self.performed_by_user_id,
            'performed_at': self.created_at.isoformat(),
            'details': self.details.to_dict(),
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Activity':
        action_type = ActivityType(data['action_type'])
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            plan_id=data['plan_id'],
            clinic_id=data['clinic_id'],
            patient_id=data['patient_id'],
            payment_link_id=data.get('payment_link_id'),
            action_type=action_type,
            details=details_from_dict(action_type, data.get('details') or {}),
            sequence=data['sequence'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            performed_by_user_id=data.get('performed_by_user_id'),
        )


class ActivityLog:
    """
    Hash-chained activity log for payment plans
    """

    def __init__(self, storage: StorageInterface, table_name: str = "payment_activity"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        self._head: Optional[Dict[str, Any]] = None

    def _load_head(self) -> Dict[str, Any]:
        """Scan the table for the most recent entry"""
        entries = self.storage.load_all(self.table_name)
        if not entries:
            return {'id': None, 'sequence': 0, 'hash': ""}
        latest = max(entries, key=lambda e: e.get('sequence', 0))
        return {'id': latest['id'], 'sequence': latest['sequence'], 'hash': latest['current_hash']}

    def _chain_head(self) -> Dict[str, Any]:
        """
        Sequence and hash of the most recent entry

        Cached between writes; the log is the only writer of its table. The
        cache is dropped when its entry was rolled back with a failed
        operation.
        """
        head = self._head
        if head is not None and head['id'] is not None and not self.storage.exists(self.table_name, head['id']):
            head = None
        if head is None:
            head = self._head = self._load_head()
        return head

    def log(
        self,
        plan: Plan,
        details: ActivityDetails,
        performed_by: Optional[str] = None
    ) -> Activity:
        """
        Append one entry for a plan

        Args:
            plan: Plan the action was applied to
            details: Typed payload; its class determines the action type
            performed_by: Acting user id, None for system actions

        Returns:
            Created Activity
        """
        action_type = details.action_type
        if action_type is None or DETAIL_TYPES.get(action_type) is not type(details):
            raise ValueError(f"Unregistered activity details: {type(details).__name__}")

        with self._lock:
            head = self._chain_head()
            now = datetime.now(timezone.utc)

            activity = Activity(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                plan_id=plan.id,
                clinic_id=plan.clinic_id,
                patient_id=plan.patient_id,
                payment_link_id=plan.payment_link_id,
                action_type=action_type,
                details=details,
                sequence=head['sequence'] + 1,
                previous_hash=head['hash'],
                current_hash="",
                performed_by_user_id=performed_by
            )
            activity.current_hash = activity.calculate_hash()

            self.storage.save(self.table_name, activity.id, activity.to_dict())
            self._head = {'id': activity.id, 'sequence': activity.sequence, 'hash': activity.current_hash}
            return activity

    def get_plan_activity(self, plan_id: str, limit: Optional[int] = None) -> List[Activity]:
        """All entries for a plan, oldest first"""
        entries = [
            Activity.from_dict(data)
            for data in self.storage.find(self.table_name, {'plan_id': plan_id})
        ]
        entries.sort(key=lambda e: e.sequence)
        if limit:
            entries = entries[-limit:]
        return entries

    def get_activity_by_type(
        self,
        action_type: Union[ActivityType, str],
        plan_id: Optional[str] = None
    ) -> List[Activity]:
        if isinstance(action_type, str):
            action_type = ActivityType(action_type)
        filters: Dict[str, Any] = {'action_type': action_type.value}
        if plan_id:
            filters['plan_id'] = plan_id
        entries = [Activity.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        entries.sort(key=lambda e: e.sequence)
        return entries

    def count(self) -> int:
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire activity chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        entries = [Activity.from_dict(data) for data in self.storage.load_all(self.table_name)]
        entries.sort(key=lambda e: e.sequence)
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'activity_id': entry.id,
                    'position': position,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'activity_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result

"""
Plan Notification Module

Event contract handed to the notification transport after a lifecycle
operation commits, plus the dispatchers that deliver it. Delivery is best
effort: a slow or failing dispatcher is logged and never affects the
operation that produced the event.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone, date
from enum import Enum
from functools import partial
from typing import Any, Dict, List, Optional

import requests

from .errors import ErrorKind, NotificationDeliveryFailedError
from .models import ContactInfo, Installment, Plan


logger = logging.getLogger("plan_engine.notifications")


class NotificationKind(Enum):
    PAYMENT_MADE = "payment_made"
    REMINDER_SENT = "reminder_sent"
    PLAN_STATUS_CHANGED = "plan_status_changed"


class Recipient(Enum):
    PATIENT = "patient"
    CLINIC = "clinic"


@dataclass
class NotificationEvent:
    """One message for one recipient; channels are gated by contact info on file"""
    plan_id: str
    kind: NotificationKind
    recipient: Recipient
    recipient_has_email: bool
    recipient_has_phone: bool
    installment_id: Optional[str] = None
    amount: Optional[int] = None
    due_date: Optional[date] = None
    details: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def deliverable(self) -> bool:
        return self.recipient_has_email or self.recipient_has_phone

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'created_at': self.created_at.isoformat(),
            'plan_id': self.plan_id,
            'installment_id': self.installment_id,
            'kind': self.kind.value,
            'recipient': self.recipient.value,
            'amount': self.amount,
            'due_date': self.due_date.isoformat() if self.due_date else None,
            'recipient_has_email': self.recipient_has_email,
            'recipient_has_phone': self.recipient_has_phone,
            'details': self.details,
        }


def build_events(
    kind: NotificationKind,
    plan: Plan,
    patient_contact: Optional[ContactInfo],
    clinic_contact: Optional[ContactInfo],
    installment: Optional[Installment] = None,
    amount: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None
) -> List[NotificationEvent]:
    """
    Build the patient and clinic events for one occurrence

    Recipients with neither email nor phone on file get no event.
    """
    events = []
    for recipient, contact in ((Recipient.PATIENT, patient_contact), (Recipient.CLINIC, clinic_contact)):
        contact = contact or ContactInfo()
        event = NotificationEvent(
            plan_id=plan.id,
            kind=kind,
            recipient=recipient,
            recipient_has_email=contact.has_email,
            recipient_has_phone=contact.has_phone,
            installment_id=installment.id if installment else None,
            amount=amount if amount is not None else (installment.amount if installment else None),
            due_date=installment.due_date if installment else plan.next_due_date,
            details=dict(details or {}),
        )
        if event.deliverable:
            events.append(event)
    return events


class NotificationDispatcher(ABC):
    """Transport for notification events"""

    @abstractmethod
    def dispatch(self, event: NotificationEvent) -> None:
        """Deliver one event; raise on failure"""
        pass


class InMemoryNotificationDispatcher(NotificationDispatcher):
    """Keeps dispatched events in memory (tests, local development)"""

    def __init__(self):
        self.events: List[NotificationEvent] = []
        self._lock = threading.Lock()

    def dispatch(self, event: NotificationEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_kind(self, kind: NotificationKind) -> List[NotificationEvent]:
        return [e for e in self.events if e.kind == kind]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


class LogNotificationDispatcher(NotificationDispatcher):
    """Logs events instead of delivering them"""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.logger = log or logger

    def dispatch(self, event: NotificationEvent) -> None:
        self.logger.info(
            f"Notification {event.kind.value} for {event.recipient.value} on plan {event.plan_id}",
            extra={'action': 'notify', 'resource': event.plan_id, 'extra': event.to_dict()}
        )


class WebhookNotificationDispatcher(NotificationDispatcher):
    """POSTs each event as JSON to a configured endpoint"""

    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def dispatch(self, event: NotificationEvent) -> None:
        response = self.session.post(
            self.url,
            json=event.to_dict(),
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        if response.status_code >= 300:
            raise NotificationDeliveryFailedError(
                f"Webhook returned {response.status_code}",
                plan_id=event.plan_id,
                event_id=event.event_id
            )


class NotificationEmitter:
    """
    Hands events to a dispatcher on worker threads and returns immediately

    Delivery outcomes are collected by done-callbacks: failures are logged as
    NotificationDeliveryFailed and counted, never raised to the caller. The
    dispatcher bounds its own latency (the webhook transport passes its
    timeout to requests); timeout_seconds only bounds the wait in shutdown().
    """

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        timeout_seconds: float = 5.0,
        enabled: bool = True
    ):
        self.dispatcher = dispatcher
        self.timeout_seconds = timeout_seconds
        self.enabled = enabled and dispatcher is not None
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="plan-notify")
        self._idle = threading.Condition()
        self._pending = 0
        self.delivered = 0
        self.failures = 0

    def emit(self, events: List[NotificationEvent]) -> int:
        """Queue events for delivery, returning how many were queued"""
        if not self.enabled or not events:
            return 0

        queued = 0
        for event in events:
            with self._idle:
                self._pending += 1
            try:
                future = self._executor.submit(self.dispatcher.dispatch, event)
            except RuntimeError as e:
                # Executor already shut down
                self._finished(event, e)
                continue
            future.add_done_callback(partial(self._on_done, event))
            queued += 1
        return queued

    def _on_done(self, event: NotificationEvent, future: Future) -> None:
        self._finished(event, future.exception())

    def _finished(self, event: NotificationEvent, error: Optional[BaseException]) -> None:
        if error is not None:
            self._record_failure(event, str(error) or type(error).__name__)
        with self._idle:
            if error is None:
                self.delivered += 1
            self._pending -= 1
            self._idle.notify_all()

    def _record_failure(self, event: NotificationEvent, reason: str) -> None:
        with self._idle:
            self.failures += 1
        logger.warning(
            f"{ErrorKind.NOTIFICATION_DELIVERY_FAILED.value}: {event.kind.value} "
            f"for plan {event.plan_id}: {reason}",
            extra={'action': 'notify', 'resource': event.plan_id,
                   'extra': {'event_id': event.event_id, 'error': reason}}
        )

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued event has been handled; False on timeout"""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    def shutdown(self) -> None:
        if not self.flush(self.timeout_seconds):
            logger.warning(f"Shutting down with {self._pending} notifications still in flight")
        self._executor.shutdown(wait=False)


def create_dispatcher(webhook_url: Optional[str], timeout: float) -> NotificationDispatcher:
    """Webhook transport when a URL is configured, log transport otherwise"""
    if webhook_url:
        return WebhookNotificationDispatcher(webhook_url, timeout=timeout)
    return LogNotificationDispatcher()

"""
Error Kinds and Operation Results

Every rejection raised by the lifecycle managers carries an ErrorKind so the
engine facade can report it as a failed OperationResult without leaking
exceptions to callers.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Reasons a lifecycle operation did not commit"""
    PLAN_NOT_FOUND = "PlanNotFound"
    INSTALLMENT_NOT_FOUND = "InstallmentNotFound"
    INSTALLMENT_ALREADY_SETTLED = "InstallmentAlreadySettled"
    NO_MODIFIABLE_INSTALLMENTS = "NoModifiableInstallments"
    INVALID_CADENCE = "InvalidCadence"
    INVALID_DATE_RANGE = "InvalidDateRange"
    STORE_CONFLICT = "StoreConflict"
    NOTIFICATION_DELIVERY_FAILED = "NotificationDeliveryFailed"
    PAYMENT_NOT_FOUND = "PaymentNotFound"
    PAYMENT_REQUEST_NOT_FOUND = "PaymentRequestNotFound"
    INVALID_PLAN_STATE = "InvalidPlanState"
    INVALID_AMOUNT = "InvalidAmount"


class PlanEngineError(ValueError):
    """Base class for domain rejections"""
    kind: ErrorKind = ErrorKind.INVALID_PLAN_STATE

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class PlanNotFoundError(PlanEngineError):
    kind = ErrorKind.PLAN_NOT_FOUND


class InstallmentNotFoundError(PlanEngineError):
    kind = ErrorKind.INSTALLMENT_NOT_FOUND


class InstallmentAlreadySettledError(PlanEngineError):
    """Raised when a caller explicitly targets an installment money has moved against"""
    kind = ErrorKind.INSTALLMENT_ALREADY_SETTLED


class InvalidCadenceError(PlanEngineError):
    kind = ErrorKind.INVALID_CADENCE


class InvalidDateRangeError(PlanEngineError):
    kind = ErrorKind.INVALID_DATE_RANGE


class StoreConflictError(PlanEngineError):
    """Concurrent-write guard tripped; retry the whole operation"""
    kind = ErrorKind.STORE_CONFLICT


class NotificationDeliveryFailedError(PlanEngineError):
    kind = ErrorKind.NOTIFICATION_DELIVERY_FAILED


class PaymentNotFoundError(PlanEngineError):
    kind = ErrorKind.PAYMENT_NOT_FOUND


class PaymentRequestNotFoundError(PlanEngineError):
    kind = ErrorKind.PAYMENT_REQUEST_NOT_FOUND


class InvalidPlanStateError(PlanEngineError):
    kind = ErrorKind.INVALID_PLAN_STATE


class InvalidAmountError(PlanEngineError):
    kind = ErrorKind.INVALID_AMOUNT


@dataclass
class OperationResult:
    """Outcome of a lifecycle operation"""
    ok: bool
    error_kind: Optional[ErrorKind] = None
    affected_installments: Optional[int] = None
    plan_id: Optional[str] = None
    status: Optional[str] = None
    message: Optional[str] = None
    payment_id: Optional[str] = None

    @property
    def is_noop(self) -> bool:
        return self.ok and self.error_kind == ErrorKind.NO_MODIFIABLE_INSTALLMENTS

    @classmethod
    def success(
        cls,
        plan_id: Optional[str] = None,
        affected_installments: int = 0,
        status: Optional[str] = None,
        message: Optional[str] = None,
        payment_id: Optional[str] = None
    ) -> 'OperationResult':
        # Zero rows touched is a legal no-op, reported distinctly from an error
        error_kind = ErrorKind.NO_MODIFIABLE_INSTALLMENTS if affected_installments == 0 else None
        return cls(
            ok=True,
            error_kind=error_kind,
            affected_installments=affected_installments,
            plan_id=plan_id,
            status=status,
            message=message,
            payment_id=payment_id
        )

    @classmethod
    def failure(cls, error: PlanEngineError) -> 'OperationResult':
        return cls(
            ok=False,
            error_kind=error.kind,
            plan_id=error.context.get('plan_id'),
            message=error.message
        )

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['error_kind'] = self.error_kind.value if self.error_kind else None
        return {k: v for k, v in result.items() if v is not None}

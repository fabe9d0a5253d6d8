"""
Shared API dependencies: the engine instance, caller identity and error mapping
"""

from typing import Optional

from fastapi import Header, HTTPException, status

from ..engine import PlanEngine
from ..errors import ErrorKind, OperationResult


# Global engine instance, created on first use
_plan_engine: Optional[PlanEngine] = None


def get_plan_engine() -> PlanEngine:
    global _plan_engine
    if _plan_engine is None:
        _plan_engine = PlanEngine()
    return _plan_engine


def set_plan_engine(engine: Optional[PlanEngine]) -> None:
    """Replace the global engine (tests, embedding)"""
    global _plan_engine
    _plan_engine = engine


def get_performed_by(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> Optional[str]:
    """Acting user from the X-User-Id header; absent means a system caller"""
    return x_user_id or None


ERROR_STATUS_CODES = {
    ErrorKind.PLAN_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INSTALLMENT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.PAYMENT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.PAYMENT_REQUEST_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INSTALLMENT_ALREADY_SETTLED: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_PLAN_STATE: status.HTTP_409_CONFLICT,
    ErrorKind.STORE_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_CADENCE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.INVALID_DATE_RANGE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.INVALID_AMOUNT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.NOTIFICATION_DELIVERY_FAILED: status.HTTP_502_BAD_GATEWAY,
}


def result_or_raise(result: OperationResult) -> dict:
    """Response body for a successful result; HTTPException for a failed one"""
    if result.ok:
        return result.to_dict()

    detail = {
        "error_kind": result.error_kind.value,
        "message": result.message,
    }
    if result.plan_id:
        detail["plan_id"] = result.plan_id
    if result.error_kind == ErrorKind.STORE_CONFLICT:
        detail["retry"] = True

    raise HTTPException(
        status_code=ERROR_STATUS_CODES.get(result.error_kind, status.HTTP_400_BAD_REQUEST),
        detail=detail
    )

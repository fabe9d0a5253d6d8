"""
Installment Classifier

Decides whether an installment is settled (money actually moved against it)
or modifiable (lifecycle operations may cancel, pause or move it), and which
installment status transitions are legal.
"""

from typing import Dict, Iterable, List, Optional, Tuple

from .errors import InstallmentAlreadySettledError
from .models import Installment, InstallmentStatus, PaymentRequest


# Statuses that can describe an executed collection. pending/overdue/paused
# rows are never settled, whatever their request says.
SETTLED_STATUSES = frozenset({
    InstallmentStatus.SENT,
    InstallmentStatus.PAID,
    InstallmentStatus.REFUNDED,
    InstallmentStatus.PARTIALLY_REFUNDED,
})

ALLOWED_STATUS_TRANSITIONS: Dict[InstallmentStatus, frozenset] = {
    InstallmentStatus.PENDING: frozenset({
        InstallmentStatus.SENT, InstallmentStatus.PAID, InstallmentStatus.OVERDUE,
        InstallmentStatus.PAUSED, InstallmentStatus.CANCELLED,
    }),
    InstallmentStatus.SENT: frozenset({
        InstallmentStatus.PENDING, InstallmentStatus.PAID, InstallmentStatus.OVERDUE,
        InstallmentStatus.PAUSED, InstallmentStatus.CANCELLED,
    }),
    InstallmentStatus.OVERDUE: frozenset({
        InstallmentStatus.PENDING, InstallmentStatus.SENT, InstallmentStatus.PAID,
        InstallmentStatus.PAUSED, InstallmentStatus.CANCELLED,
    }),
    InstallmentStatus.PAUSED: frozenset({
        InstallmentStatus.PENDING, InstallmentStatus.PAID, InstallmentStatus.CANCELLED,
    }),
    # A request left open by a cancel can still be paid by the patient
    InstallmentStatus.CANCELLED: frozenset({InstallmentStatus.PAID}),
    InstallmentStatus.PAID: frozenset({
        InstallmentStatus.REFUNDED, InstallmentStatus.PARTIALLY_REFUNDED,
    }),
    InstallmentStatus.PARTIALLY_REFUNDED: frozenset({InstallmentStatus.REFUNDED}),
    InstallmentStatus.REFUNDED: frozenset(),
}


class IllegalTransitionError(RuntimeError):
    """An operation tried to move an installment along an edge that does not exist"""


def is_settled(installment: Installment, payment_request: Optional[PaymentRequest]) -> bool:
    """
    An installment is settled iff its status can describe an executed
    collection, it links a payment request, that request exists, and the
    request carries a payment id. A sent installment whose request is still
    unpaid stays modifiable.
    """
    if installment.status not in SETTLED_STATUSES:
        return False
    if not installment.linked_payment_request_id:
        return False
    if payment_request is None or payment_request.id != installment.linked_payment_request_id:
        return False
    return payment_request.payment_id is not None


def is_modifiable(installment: Installment, payment_request: Optional[PaymentRequest]) -> bool:
    return not is_settled(installment, payment_request)


def partition(
    installments: Iterable[Installment],
    requests: Dict[str, PaymentRequest]
) -> Tuple[List[Installment], List[Installment]]:
    """
    Split installments into (settled, modifiable), preserving order

    Args:
        installments: Installments of one plan
        requests: Linked payment requests keyed by id
    """
    settled: List[Installment] = []
    modifiable: List[Installment] = []
    for installment in installments:
        request = requests.get(installment.linked_payment_request_id) if installment.linked_payment_request_id else None
        if is_settled(installment, request):
            settled.append(installment)
        else:
            modifiable.append(installment)
    return settled, modifiable


def require_modifiable(installment: Installment, payment_request: Optional[PaymentRequest]) -> None:
    """Reject explicit mutation of a settled installment"""
    if is_settled(installment, payment_request):
        raise InstallmentAlreadySettledError(
            f"Installment {installment.id} is already settled",
            plan_id=installment.plan_id,
            installment_id=installment.id
        )


def can_transition(current: InstallmentStatus, new: InstallmentStatus) -> bool:
    if current == new:
        return True
    return new in ALLOWED_STATUS_TRANSITIONS.get(current, frozenset())


def assert_transition(installment: Installment, new: InstallmentStatus) -> None:
    if not can_transition(installment.status, new):
        raise IllegalTransitionError(
            f"Installment {installment.id} cannot move from "
            f"{installment.status.value} to {new.value}"
        )

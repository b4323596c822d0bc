"""
Value types shared by the domain, models and services.

Enumerations are ``str`` enums so they serialize directly into JSON logs,
queue payloads and String columns.  Money is always a plain ``int`` in the
smallest currency unit (agorot, cents); there is no float anywhere.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Actor roles. Admin and manager are the elevated roles."""

    ADMIN = "admin"
    MANAGER = "manager"
    COURIER = "courier"
    CUSTOMER = "customer"
    EVENT_STAFF = "event_staff"


ELEVATED_ROLES: frozenset[Role] = frozenset({Role.ADMIN, Role.MANAGER})


class PaymentMethod(str, Enum):
    CREDIT_CARD_APP = "credit_card_app"
    BIT_APP = "bit_app"
    CASH_ON_DELIVERY = "cash_on_delivery"
    CREDIT_ON_DELIVERY = "credit_on_delivery"
    LOYALTY_ONLY = "loyalty_only"


class PaymentStatus(str, Enum):
    """Payment state embedded in orders and bookings."""

    PENDING_COURIER = "pending_courier"  # Collected by the courier on delivery
    AUTHORIZED = "authorized"
    ACTION_REQUIRED = "authorization_action_required"  # Hold placed, customer step pending
    CAPTURED = "captured"
    PAID = "paid"                        # Nothing left to collect
    VOIDED = "voided"
    VOID_FAILED = "void_failed"
    CAPTURE_FAILED = "capture_failed"
    REFUNDED = "refunded"
    REFUND_FAILED = "refund_failed"


class ReturnCondition(str, Enum):
    OK = "ok"
    DIRTY = "dirty"
    DAMAGED = "damaged"


class FeeInterval(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class DiscountType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class LedgerPhase(str, Enum):
    """
    Phase of one deferred side effect.

    NOT_REQUIRED -> PENDING -> (IN_PROGRESS ->) DONE | FAILED

    DONE and FAILED are final: a redelivered message finding either phase
    is acknowledged without doing any work.  IN_PROGRESS marks a claimed
    effect whose external call may or may not have happened.
    """

    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


FINAL_LEDGER_PHASES: frozenset[LedgerPhase] = frozenset(
    {LedgerPhase.DONE, LedgerPhase.FAILED}
)


@dataclass(frozen=True)
class ProcessingLedger:
    """Per-entity record of a deferred side effect: ``{phase, processed_at}``."""

    phase: LedgerPhase
    processed_at: datetime | None = None

    def __post_init__(self) -> None:
        # Rows load the phase back as plain text
        object.__setattr__(self, "phase", LedgerPhase(self.phase))

    def __composite_values__(self) -> tuple:
        return (self.phase.value, self.processed_at)

    @property
    def is_final(self) -> bool:
        return self.phase in FINAL_LEDGER_PHASES

    @classmethod
    def not_required(cls) -> "ProcessingLedger":
        return cls(LedgerPhase.NOT_REQUIRED)

    @classmethod
    def pending(cls) -> "ProcessingLedger":
        return cls(LedgerPhase.PENDING)


class CancellationInitiator(str, Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    SYSTEM = "system"

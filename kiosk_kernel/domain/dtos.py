"""
DTOs -- Immutable snapshots of persisted entities and operation results.

Responsibility:
    Frozen records handed out by the repository outside a transaction and
    returned by the lifecycle services.  Services read DTOs for advisory
    checks; authoritative reads happen on ORM rows inside a transaction.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Models convert themselves into these
    via ``to_dto()``; nothing here imports the ORM.

Invariants enforced:
    - DTOs are frozen; collections are tuples or read-only mappings.
    - Status fields are enum members, never raw strings.
    - Status history is append-only: a record only ever grows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping
from uuid import UUID

from kiosk_kernel.domain.fees import LineItem
from kiosk_kernel.domain.values import (
    DiscountType,
    PaymentMethod,
    PaymentStatus,
    ProcessingLedger,
    ReturnCondition,
    Role,
)
from kiosk_kernel.domain.workflows import OrderStatus, RentalStatus


@dataclass(frozen=True)
class StatusHistoryEntry:
    """One append-only status history record."""

    status: str
    timestamp: datetime
    actor_id: str | None
    role: str | None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "role": self.role,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StatusHistoryEntry:
        return cls(
            status=data["status"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            actor_id=data.get("actor_id"),
            role=data.get("role"),
            reason=data.get("reason"),
        )


@dataclass(frozen=True)
class UserInfo:
    id: UUID
    display_name: str
    role: Role
    is_active: bool
    loyalty_balance: int
    preferred_language: str
    gateway_customer_ref: str | None
    current_box_id: UUID | None


@dataclass(frozen=True)
class BoxInfo:
    """Box with its current inventory, keyed by product/rental-item id."""

    id: UUID
    name: str
    is_active: bool
    currency: str
    assigned_courier_id: UUID | None
    inventory: Mapping[UUID, int] = field(default_factory=lambda: MappingProxyType({}))

    def available(self, item_id: UUID) -> int:
        return self.inventory.get(item_id, 0)


@dataclass(frozen=True)
class ProductInfo:
    id: UUID
    name: str
    unit_price: int
    currency: str
    is_active: bool


@dataclass(frozen=True)
class RentalItemInfo:
    id: UUID
    name: str
    rental_fee: int
    deposit: int
    currency: str
    is_active: bool


@dataclass(frozen=True)
class PromoCodeInfo:
    id: UUID
    code: str
    discount_type: DiscountType
    discount_value: int
    is_active: bool
    valid_from: datetime | None
    valid_until: datetime | None
    max_uses: int | None
    uses_count: int

    def invalid_reason(self, at: datetime) -> str | None:
        """Why the code cannot be redeemed at ``at``, or None if it can."""
        if not self.is_active:
            return "inactive"
        if self.valid_from is not None and at < self.valid_from:
            return "not_yet_valid"
        if self.valid_until is not None and at > self.valid_until:
            return "expired"
        return None

    @property
    def exhausted(self) -> bool:
        return self.max_uses is not None and self.uses_count >= self.max_uses


@dataclass(frozen=True)
class OrderRecord:
    id: UUID
    customer_id: UUID
    box_id: UUID
    items: tuple[LineItem, ...]
    status: OrderStatus
    status_history: tuple[StatusHistoryEntry, ...]
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    currency: str
    items_total: int
    coupon_discount: int
    loyalty_discount: int
    tip: int
    final_amount: int
    promo_code: str | None
    authorization_id: str | None
    authorized_amount: int | None
    settlement_id: str | None
    amount_charged: int | None
    refund_id: str | None
    tip_settlement_id: str | None
    cancellation: ProcessingLedger
    processing_error: str | None
    cancellation_reason: str | None
    version: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class RentalBookingRecord:
    id: UUID
    customer_id: UUID
    rental_item_id: UUID
    rental_item_name: str
    pickup_box_id: UUID
    return_box_id: UUID | None
    status: RentalStatus
    status_history: tuple[StatusHistoryEntry, ...]
    currency: str
    rental_fee: int
    deposit: int
    overtime_interval_minutes: int
    overtime_fee_per_interval: int
    cleaning_fee: int
    expected_return_at: datetime | None
    picked_up_at: datetime | None
    pickup_courier_id: UUID | None
    returned_at: datetime | None
    return_courier_id: UUID | None
    returned_condition: ReturnCondition | None
    return_notes: str | None
    return_photo_url: str | None
    payment_status: PaymentStatus
    authorization_id: str | None
    authorized_amount: int | None
    settlement_id: str | None
    amount_charged: int | None
    overtime_fee_charged: int | None
    cleaning_fee_charged: int | None
    damage_fee_charged: int | None
    final_charge: int | None
    deposit_ledger: ProcessingLedger
    processing_error: str | None
    cancellation_reason: str | None
    version: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ManualReviewRecord:
    id: UUID
    kind: str
    entity_type: str | None
    entity_id: UUID | None
    authorization_id: str | None
    amount: int | None
    currency: str | None
    reason: str
    detail: Mapping[str, Any]
    resolved_at: datetime | None
    created_at: datetime


# -----------------------------------------------------------------------------
# Operation results
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class OrderCreated:
    order_id: UUID
    final_amount: int
    payment_status: PaymentStatus


@dataclass(frozen=True)
class OrderEdited:
    order_id: UUID
    final_amount: int
    payment_status: PaymentStatus
    reauthorized: bool = False


@dataclass(frozen=True)
class TipAdded:
    order_id: UUID
    tip: int
    final_amount: int
    settlement_id: str | None


@dataclass(frozen=True)
class BookingCreated:
    booking_id: UUID
    requires_action: bool = False
    action_url: str | None = None


@dataclass(frozen=True)
class TransitionApplied:
    """Outcome of a status-changing operation; ``changed`` is False for a no-op."""

    entity_id: UUID
    status: str
    changed: bool = True

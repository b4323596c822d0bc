"""
Module: kiosk_kernel.models.manual_review
Responsibility: ORM persistence for items an operator must reconcile by
    hand: orphaned or unknown authorizations, failed voids and captures,
    damaged returns and failed side effects.
Architecture position: Kernel > Models.

Invariants enforced:
    - Append-only from the engine's point of view.  Only an operator sets
      resolved_at.
    - A review item does not need an order or booking row to exist: a
      failed void after a rolled-back creation is recorded here with the
      authorization id and amount only.

Audit relevance:
    This table is the durable form of every high-severity alert the engine
    raises.  Nothing that needs reconciliation lives only in a log line.
"""

from datetime import datetime
from enum import Enum
from types import MappingProxyType
from uuid import UUID

from sqlalchemy import JSON, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from kiosk_kernel.db.base import TrackedBase, UUIDString
from kiosk_kernel.domain.dtos import ManualReviewRecord


class ReviewKind(str, Enum):
    ORPHANED_AUTHORIZATION = "orphaned_authorization"
    AUTHORIZATION_STATUS_UNKNOWN = "authorization_status_unknown"
    VOID_FAILED = "void_failed"
    CAPTURE_FAILED = "capture_failed"
    REFUND_FAILED = "refund_failed"
    SETTLEMENT_OUTCOME_UNKNOWN = "settlement_outcome_unknown"
    DAMAGED_RETURN = "damaged_return"
    SIDE_EFFECT_FAILED = "side_effect_failed"
    PUBLISH_FAILED = "publish_failed"
    DATA_ERROR = "data_error"


class ManualReviewItem(TrackedBase):
    __tablename__ = "manual_review_items"

    __table_args__ = (
        Index("idx_review_kind", "kind"),
        Index("idx_review_entity", "entity_type", "entity_id"),
        Index("idx_review_unresolved", "resolved_at"),
    )

    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    entity_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    authorization_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    amount: Mapped[int | None] = mapped_column(nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    detail: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<ManualReviewItem {self.kind} {self.entity_type}:{self.entity_id}>"

    def to_dto(self) -> ManualReviewRecord:
        return ManualReviewRecord(
            id=self.id,
            kind=self.kind,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            authorization_id=self.authorization_id,
            amount=self.amount,
            currency=self.currency,
            reason=self.reason,
            detail=MappingProxyType(dict(self.detail or {})),
            resolved_at=self.resolved_at,
            created_at=self.created_at,
        )

"""
Module: kiosk_kernel.models.promo_code
Responsibility: ORM persistence for promo codes and their usage counter.
Architecture position: Kernel > Models.

Invariants enforced:
    - code is unique (uq_promo_code).
    - uses_count only grows, by a guarded relative UPDATE that also checks
      the cap, in the same transaction as the order that redeems it.
"""

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from kiosk_kernel.db.base import TrackedBase
from kiosk_kernel.domain.dtos import PromoCodeInfo
from kiosk_kernel.domain.values import DiscountType


class PromoCode(TrackedBase):
    __tablename__ = "promo_codes"

    __table_args__ = (
        UniqueConstraint("code", name="uq_promo_code"),
        CheckConstraint("uses_count >= 0", name="ck_promo_uses_non_negative"),
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False)

    discount_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DiscountType.FIXED.value,
    )

    # Amount in the smallest currency unit, or a percent
    discount_value: Mapped[int] = mapped_column(nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    valid_from: Mapped[datetime | None] = mapped_column(nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(nullable=True)

    # None means unlimited
    max_uses: Mapped[int | None] = mapped_column(nullable=True)
    uses_count: Mapped[int] = mapped_column(nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<PromoCode {self.code} uses={self.uses_count}/{self.max_uses}>"

    def to_dto(self) -> PromoCodeInfo:
        return PromoCodeInfo(
            id=self.id,
            code=self.code,
            discount_type=DiscountType(self.discount_type),
            discount_value=self.discount_value,
            is_active=self.is_active,
            valid_from=self.valid_from,
            valid_until=self.valid_until,
            max_uses=self.max_uses,
            uses_count=self.uses_count,
        )

"""
Module: kiosk_kernel.models.user
Responsibility: ORM persistence for customers and staff (couriers, managers,
    admins) acting on orders and bookings.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain value types only.

Invariants enforced:
    - loyalty_balance >= 0 (ck_user_loyalty_non_negative).  The balance is
      changed only by guarded relative updates in the repository, never by
      assigning a value read earlier.

Failure modes:
    - IntegrityError if a write would drive the balance negative.

Audit relevance:
    current_box_id is the courier's assigned box; pickup and return
    confirmations check it before any state change.
"""

from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from kiosk_kernel.db.base import TrackedBase, UUIDString
from kiosk_kernel.domain.dtos import UserInfo
from kiosk_kernel.domain.values import Role


class User(TrackedBase):
    """A customer or staff member."""

    __tablename__ = "users"

    __table_args__ = (
        CheckConstraint("loyalty_balance >= 0", name="ck_user_loyalty_non_negative"),
        Index("idx_user_role", "role"),
    )

    display_name: Mapped[str] = mapped_column(String(200), nullable=False)

    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=Role.CUSTOMER.value,
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Smallest currency unit
    loyalty_balance: Mapped[int] = mapped_column(nullable=False, default=0)

    preferred_language: Mapped[str] = mapped_column(String(10), nullable=False, default="he")

    gateway_customer_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Courier assignment
    current_box_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return f"<User {self.id} role={self.role}>"

    def to_dto(self) -> UserInfo:
        return UserInfo(
            id=self.id,
            display_name=self.display_name,
            role=Role(self.role),
            is_active=self.is_active,
            loyalty_balance=self.loyalty_balance,
            preferred_language=self.preferred_language,
            gateway_customer_ref=self.gateway_customer_ref,
            current_box_id=self.current_box_id,
        )

"""
Module: kiosk_kernel.models.catalog
Responsibility: ORM persistence for sellable products and rentable items.
Architecture position: Kernel > Models.

Prices are read once when an order or booking is created and copied into it
as a snapshot; later price edits never touch existing orders.
"""

from sqlalchemy import Boolean, CheckConstraint, String
from sqlalchemy.orm import Mapped, mapped_column

from kiosk_kernel.db.base import TrackedBase
from kiosk_kernel.domain.dtos import ProductInfo, RentalItemInfo


class Product(TrackedBase):
    __tablename__ = "products"

    __table_args__ = (
        CheckConstraint("unit_price >= 0", name="ck_product_price_non_negative"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    unit_price: Mapped[int] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ILS")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Product {self.id} {self.name}>"

    def to_dto(self) -> ProductInfo:
        return ProductInfo(
            id=self.id,
            name=self.name,
            unit_price=self.unit_price,
            currency=self.currency,
            is_active=self.is_active,
        )


class RentalItem(TrackedBase):
    __tablename__ = "rental_items"

    __table_args__ = (
        CheckConstraint("rental_fee >= 0", name="ck_rental_item_fee_non_negative"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    rental_fee: Mapped[int] = mapped_column(nullable=False, default=0)

    # Zero means not configured; bookings require a positive deposit
    deposit: Mapped[int] = mapped_column(nullable=False, default=0)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ILS")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<RentalItem {self.id} {self.name}>"

    def to_dto(self) -> RentalItemInfo:
        return RentalItemInfo(
            id=self.id,
            name=self.name,
            rental_fee=self.rental_fee,
            deposit=self.deposit,
            currency=self.currency,
            is_active=self.is_active,
        )

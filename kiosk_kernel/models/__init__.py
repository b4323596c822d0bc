"""ORM models for the kiosk kernel."""

from kiosk_kernel.models.box import Box, BoxStock, StockKind
from kiosk_kernel.models.catalog import Product, RentalItem
from kiosk_kernel.models.manual_review import ManualReviewItem, ReviewKind
from kiosk_kernel.models.order import Order
from kiosk_kernel.models.promo_code import PromoCode
from kiosk_kernel.models.rental_booking import RentalBooking
from kiosk_kernel.models.user import User

__all__ = [
    "User",
    "Box",
    "BoxStock",
    "StockKind",
    "Product",
    "RentalItem",
    "PromoCode",
    "Order",
    "RentalBooking",
    "ManualReviewItem",
    "ReviewKind",
    "import_all_models",
]


def import_all_models() -> list[type]:
    """Return every mapped model; importing this package registers them."""
    return [
        User,
        Box,
        BoxStock,
        Product,
        RentalItem,
        PromoCode,
        Order,
        RentalBooking,
        ManualReviewItem,
    ]

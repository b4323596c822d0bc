"""
Kiosk settings schema.

Frozen dataclasses the YAML configuration is parsed into.  Amounts are
integers in the smallest currency unit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///kiosk.db"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    sqlite_busy_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class RentalSettings:
    overtime_interval_minutes: int = 60
    overtime_fee: int = 0
    cleaning_fee: int = 0
    default_rental_hours: int = 24
    action_required_ttl_minutes: int = 30


@dataclass(frozen=True)
class PaymentSettings:
    timeout_seconds: float = 10.0
    authorization_methods: frozenset[str] = frozenset({"credit_card_app", "bit_app"})
    courier_methods: frozenset[str] = frozenset({"cash_on_delivery", "credit_on_delivery"})


@dataclass(frozen=True)
class RepositorySettings:
    max_attempts: int = 5
    backoff_seconds: float = 0.02


@dataclass(frozen=True)
class QueueSettings:
    order_cancellation_topic: str = "order-cancellation-side-effects"
    rental_deposit_topic: str = "rental-deposit-processing"
    max_deliveries: int = 5
    receive_timeout_seconds: float = 1.0


@dataclass(frozen=True)
class SideChannelSettings:
    max_workers: int = 4


@dataclass(frozen=True)
class PermissionSettings:
    """Role name -> granted permission keys.  ``*`` grants everything."""

    roles: tuple[tuple[str, frozenset[str]], ...] = ()

    def for_role(self, role: str) -> frozenset[str]:
        for name, keys in self.roles:
            if name == role:
                return keys
        return frozenset()


@dataclass(frozen=True)
class KioskSettings:
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    rental: RentalSettings = field(default_factory=RentalSettings)
    payment: PaymentSettings = field(default_factory=PaymentSettings)
    repository: RepositorySettings = field(default_factory=RepositorySettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    side_channel: SideChannelSettings = field(default_factory=SideChannelSettings)
    permissions: PermissionSettings = field(default_factory=PermissionSettings)
    checksum: str = ""

    SECTIONS = ("database", "rental", "payment", "repository", "queue", "side_channel", "permissions")

    def section(self, kind: str) -> Any:
        """Return one named section; raises KeyError for unknown names."""
        if kind not in self.SECTIONS:
            raise KeyError(f"Unknown settings section: {kind}")
        return getattr(self, kind)

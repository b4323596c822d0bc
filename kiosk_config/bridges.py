"""
Config -> Kernel Bridges.

Functions that turn ``KioskSettings`` into wired kernel objects.  They live
in kiosk_config (the producer) because the kernel must NEVER import
kiosk_config.

Usage:
    from kiosk_config import get_settings
    from kiosk_config.bridges import build_runtime, build_session_factory

    settings = get_settings()
    runtime = build_runtime(settings, build_session_factory(settings, create_schema=True))
    runtime.worker.start()
    result = runtime.operations.create_order(...)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.orm import Session, sessionmaker

from kiosk_config.schema import KioskSettings
from kiosk_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from kiosk_kernel.domain.clock import Clock, SystemClock
from kiosk_kernel.services.collaborators import (
    ActivityLog,
    ConfigSource,
    Notifier,
    OperatorAlerts,
    PermissionChecker,
    RolePermissionChecker,
    StaticConfigSource,
)
from kiosk_kernel.services.compensation import PaymentCompensator
from kiosk_kernel.services.message_queue import InMemoryMessageQueue, MessageQueue
from kiosk_kernel.services.operations import KioskOperations
from kiosk_kernel.services.order_lifecycle import OrderLifecycleService
from kiosk_kernel.services.payment_gateway import (
    PaymentGateway,
    SimulatedPaymentGateway,
    TimeoutGuardedGateway,
)
from kiosk_kernel.services.rental_lifecycle import RentalLifecycleService
from kiosk_kernel.services.repository import EntityRepository
from kiosk_kernel.services.side_channel import SideChannel
from kiosk_kernel.services.side_effect_worker import SideEffectWorker


def build_session_factory(settings: KioskSettings, create_schema: bool = False) -> sessionmaker[Session]:
    """
    Initialize the engine from the ``database`` section and return the
    session factory.  ``create_schema`` creates missing tables (first boot).
    """
    db = settings.database
    init_engine_from_url(
        db.url,
        echo=db.echo,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        sqlite_busy_timeout=db.sqlite_busy_timeout_seconds,
    )
    if create_schema:
        create_tables()
    return get_session_factory()


def build_permission_checker(settings: KioskSettings) -> RolePermissionChecker:
    """Role table from the ``permissions`` section."""
    return RolePermissionChecker(dict(settings.permissions.roles))


def build_config_source(settings: KioskSettings) -> StaticConfigSource:
    """ConfigSource answering ``fetch_config(kind)`` from the loaded sections."""
    return StaticConfigSource({name: settings.section(name) for name in settings.SECTIONS})


def build_repository(
    settings: KioskSettings,
    session_factory: sessionmaker[Session],
    clock: Clock | None = None,
) -> EntityRepository:
    return EntityRepository(
        session_factory,
        clock or SystemClock(),
        max_attempts=settings.repository.max_attempts,
        backoff_seconds=settings.repository.backoff_seconds,
    )


def build_gateway(settings: KioskSettings, inner: PaymentGateway | None = None) -> TimeoutGuardedGateway:
    """Timeout guard around ``inner`` (the simulated processor by default)."""
    return TimeoutGuardedGateway(
        inner or SimulatedPaymentGateway(),
        timeout_seconds=settings.payment.timeout_seconds,
    )


def build_queue(settings: KioskSettings) -> InMemoryMessageQueue:
    return InMemoryMessageQueue(max_deliveries=settings.queue.max_deliveries)


def build_side_channel(
    settings: KioskSettings,
    notifier: Notifier | None = None,
    activity_log: ActivityLog | None = None,
    alerts: OperatorAlerts | None = None,
) -> SideChannel:
    return SideChannel(
        notifier=notifier,
        activity_log=activity_log,
        alerts=alerts,
        max_workers=settings.side_channel.max_workers,
    )


@dataclass
class KioskRuntime:
    """Everything one process needs to serve the lifecycle operations."""

    repository: EntityRepository
    gateway: PaymentGateway
    queue: MessageQueue
    side_channel: SideChannel
    config_source: ConfigSource
    orders: OrderLifecycleService
    rentals: RentalLifecycleService
    worker: SideEffectWorker
    operations: KioskOperations

    def close(self) -> None:
        self.worker.stop()
        self.orders.close()
        self.rentals.close()
        self.side_channel.shutdown(wait=True)
        if isinstance(self.gateway, TimeoutGuardedGateway):
            self.gateway.shutdown()


def build_runtime(
    settings: KioskSettings,
    session_factory: sessionmaker[Session],
    *,
    clock: Clock | None = None,
    gateway: PaymentGateway | None = None,
    queue: MessageQueue | None = None,
    side_channel: SideChannel | None = None,
    permissions: PermissionChecker | None = None,
) -> KioskRuntime:
    """
    Wire repository, gateway, queue, services, worker and facade.

    Any collaborator passed in is used as-is; the rest are built from
    ``settings``.  A passed ``gateway`` is not wrapped in a timeout guard.
    """
    repository = build_repository(settings, session_factory, clock)
    gateway = gateway or build_gateway(settings)
    queue = queue or build_queue(settings)
    side_channel = side_channel or build_side_channel(settings)
    permissions = permissions or build_permission_checker(settings)
    config_source = build_config_source(settings)
    compensator = PaymentCompensator(repository, gateway, side_channel)

    payment = config_source.fetch_config("payment")
    rental = config_source.fetch_config("rental")
    topics = config_source.fetch_config("queue")

    shared = (repository, gateway, queue, side_channel, permissions, compensator)
    orders = OrderLifecycleService(
        *shared,
        authorization_methods=payment.authorization_methods,
        courier_methods=payment.courier_methods,
        cancellation_topic=topics.order_cancellation_topic,
    )
    rentals = RentalLifecycleService(
        *shared,
        overtime_interval_minutes=rental.overtime_interval_minutes,
        overtime_fee=rental.overtime_fee,
        cleaning_fee=rental.cleaning_fee,
        default_rental_hours=rental.default_rental_hours,
        action_required_ttl_minutes=rental.action_required_ttl_minutes,
        deposit_topic=topics.rental_deposit_topic,
    )
    worker = SideEffectWorker(
        repository,
        gateway,
        queue,
        side_channel,
        compensator,
        order_topic=topics.order_cancellation_topic,
        deposit_topic=topics.rental_deposit_topic,
        receive_timeout=topics.receive_timeout_seconds,
        claim_timeout=timedelta(seconds=max(60.0, settings.payment.timeout_seconds * 2)),
    )
    return KioskRuntime(
        repository=repository,
        gateway=gateway,
        queue=queue,
        side_channel=side_channel,
        config_source=config_source,
        orders=orders,
        rentals=rentals,
        worker=worker,
        operations=KioskOperations(orders, rentals),
    )

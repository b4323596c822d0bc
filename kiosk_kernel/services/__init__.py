"""Services for the kiosk kernel (lifecycle write side)."""

from kiosk_kernel.services.collaborators import (
    ActivityLog,
    ConfigSource,
    LoggingActivityLog,
    LoggingNotifier,
    LoggingOperatorAlerts,
    Notifier,
    OperatorAlerts,
    PermissionChecker,
    RolePermissionChecker,
    StaticConfigSource,
)
from kiosk_kernel.services.compensation import CompensationOutcome, PaymentCompensator
from kiosk_kernel.services.message_queue import InMemoryMessageQueue, MessageQueue, QueueMessage
from kiosk_kernel.services.operations import KioskOperations, OperationResult
from kiosk_kernel.services.order_lifecycle import OrderItemRequest, OrderLifecycleService
from kiosk_kernel.services.payment_gateway import (
    AuthorizationResult,
    Fault,
    PaymentGateway,
    RefundResult,
    SettlementResult,
    SimulatedPaymentGateway,
    TimeoutGuardedGateway,
    VoidResult,
)
from kiosk_kernel.services.rental_lifecycle import RentalLifecycleService
from kiosk_kernel.services.repository import EntityKind, EntityRepository, TransactionHandle
from kiosk_kernel.services.side_channel import InlineSideChannel, SideChannel
from kiosk_kernel.services.side_effect_worker import SideEffectWorker, WorkerOutcome

__all__ = [
    "ActivityLog",
    "AuthorizationResult",
    "CompensationOutcome",
    "ConfigSource",
    "EntityKind",
    "EntityRepository",
    "Fault",
    "InMemoryMessageQueue",
    "InlineSideChannel",
    "KioskOperations",
    "LoggingActivityLog",
    "LoggingNotifier",
    "LoggingOperatorAlerts",
    "MessageQueue",
    "Notifier",
    "OperationResult",
    "OperatorAlerts",
    "OrderItemRequest",
    "OrderLifecycleService",
    "PaymentCompensator",
    "PaymentGateway",
    "PermissionChecker",
    "QueueMessage",
    "RefundResult",
    "RentalLifecycleService",
    "RolePermissionChecker",
    "SettlementResult",
    "SideChannel",
    "SideEffectWorker",
    "SimulatedPaymentGateway",
    "StaticConfigSource",
    "TimeoutGuardedGateway",
    "TransactionHandle",
    "VoidResult",
    "WorkerOutcome",
]

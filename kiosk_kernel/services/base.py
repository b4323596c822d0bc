"""
LifecycleService -- shared plumbing for the order and rental orchestrators.

Responsibility:
    Caller identity and permission checks, concurrent advisory loads,
    status-history entries and post-commit queue publication, so the
    concrete services read as the saga steps they implement.

Architecture position:
    Kernel > Services.  Extended by ``OrderLifecycleService`` and
    ``RentalLifecycleService``.

Invariants enforced:
    - Every public operation starts by resolving an active actor; an
      absent identity is UnauthenticatedError before any read.
    - Advisory loads run concurrently and hold no state afterwards; every
      write path re-reads inside ``run_transaction``.
    - A failed publish after commit never fails the operation: the entity
      gets a processing error, a review item is written and operators are
      alerted.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Mapping
from uuid import UUID

from kiosk_kernel.domain.dtos import StatusHistoryEntry, UserInfo
from kiosk_kernel.domain.state_machine import TransitionScope
from kiosk_kernel.domain.values import ELEVATED_ROLES, Role
from kiosk_kernel.exceptions import (
    InvalidArgumentError,
    KioskError,
    PaymentActionRequiredError,
    PaymentDeclinedError,
    PaymentStatusUnknownError,
    PermissionDeniedError,
    UnauthenticatedError,
)
from kiosk_kernel.logging_config import get_logger
from kiosk_kernel.models.manual_review import ReviewKind
from kiosk_kernel.services.collaborators import PermissionChecker
from kiosk_kernel.services.compensation import PaymentCompensator
from kiosk_kernel.services.message_queue import MessageQueue
from kiosk_kernel.services.payment_gateway import AuthorizationResult, PaymentGateway
from kiosk_kernel.services.repository import EntityKind, EntityRepository, TransactionHandle
from kiosk_kernel.services.side_channel import SideChannel

logger = get_logger("services.base")

SYSTEM_ACTOR = "system"


def scope_for(role: Role) -> TransitionScope:
    return TransitionScope.ELEVATED if role in ELEVATED_ROLES else TransitionScope.ANY


def parse_uuid(field: str, value: Any) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise InvalidArgumentError(field, "not a valid id") from None


class LifecycleService:
    """Base class of the request-scoped lifecycle orchestrators."""

    entity_kind: EntityKind

    def __init__(
        self,
        repository: EntityRepository,
        gateway: PaymentGateway,
        queue: MessageQueue,
        side_channel: SideChannel,
        permissions: PermissionChecker,
        compensator: PaymentCompensator | None = None,
        loader_workers: int = 4,
    ):
        self._repository = repository
        self._gateway = gateway
        self._queue = queue
        self._side_channel = side_channel
        self._permissions = permissions
        self._compensator = compensator or PaymentCompensator(repository, gateway, side_channel)
        self._loader = ThreadPoolExecutor(
            max_workers=loader_workers, thread_name_prefix=f"{type(self).__name__}-load",
        )

    @property
    def clock(self):
        return self._repository.clock

    def close(self) -> None:
        self._loader.shutdown(wait=True)

    # -- caller identity ------------------------------------------------------

    def _authenticate(self, actor_id: Any, operation: str) -> UserInfo:
        if actor_id is None:
            raise UnauthenticatedError(operation)
        actor = self._repository.get(EntityKind.USER, parse_uuid("actor_id", actor_id))
        if not actor.is_active:
            raise PermissionDeniedError(actor.id, operation, "account inactive")
        return actor

    def _has_permission(
        self,
        actor: UserInfo,
        permission_key: str,
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        return self._permissions.check_permission(actor.id, actor.role.value, permission_key, context)

    def _require_permission(
        self,
        actor: UserInfo,
        permission_key: str,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        if not self._has_permission(actor, permission_key, context):
            raise PermissionDeniedError(actor.id, permission_key)

    def _require_actor(
        self,
        actor_id: Any,
        permission_key: str,
        operation: str,
        context: Mapping[str, Any] | None = None,
    ) -> UserInfo:
        actor = self._authenticate(actor_id, operation)
        self._require_permission(actor, permission_key, context)
        return actor

    # -- loading --------------------------------------------------------------

    def _gather(self, *calls: Callable[[], Any]) -> list[Any]:
        """
        Run advisory reads concurrently; results keep the order of ``calls``.

        The first failing read's exception is raised after all reads finish.
        """
        futures = [self._loader.submit(call) for call in calls]
        results: list[Any] = []
        first_error: BaseException | None = None
        for future in futures:
            try:
                results.append(future.result())
            except Exception as exc:
                results.append(None)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error
        return results

    # -- payment --------------------------------------------------------------

    def _authorize(
        self,
        amount: int,
        currency: str,
        actor: UserInfo,
        description: str,
        payment_token: str | None,
        *,
        allow_pending_action: bool,
    ) -> AuthorizationResult:
        """
        Authorize ``amount`` before any transaction starts.

        Declines and required customer actions raise immediately; nothing
        has been written, so there is nothing to compensate.  A hold placed
        with a pending customer step is voided unless the caller can carry
        it (``allow_pending_action``).

        Raises:
            PaymentStatusUnknownError: timeout or transport failure; an
                ``authorization_status_unknown`` review item is recorded.
            PaymentActionRequiredError: customer step needed.
            PaymentDeclinedError: gateway declined.
        """
        entity_type = self.entity_kind.value
        result = self._gateway.authorize(
            amount, currency, actor.gateway_customer_ref, description, payment_token,
        )
        if result.status_unknown:
            self._compensator.record_unknown_authorization(
                amount,
                currency,
                entity_type=entity_type,
                customer_ref=actor.gateway_customer_ref,
                error_code=result.error_code,
            )
            raise PaymentStatusUnknownError(result.error_code)
        if not result.success:
            logger.info(
                "payment_authorization_rejected",
                extra={
                    "entity_type": entity_type,
                    "amount": amount,
                    "error_code": result.error_code,
                    "requires_action": result.requires_action,
                },
            )
            if result.requires_action:
                raise PaymentActionRequiredError(result.action_url)
            raise PaymentDeclinedError(result.error_code)
        if result.requires_action and not allow_pending_action:
            self._compensator.void_after_failure(
                result.authorization_id,
                amount,
                currency,
                entity_type=entity_type,
                reason="customer action required",
            )
            raise PaymentActionRequiredError(result.action_url)

        logger.info(
            "payment_authorized",
            extra={
                "entity_type": entity_type,
                "authorization_id": result.authorization_id,
                "amount": amount,
                "currency": currency,
                "requires_action": result.requires_action,
            },
        )
        return result

    def _compensate(
        self,
        exc: BaseException,
        authorization: AuthorizationResult | None,
        amount: int,
        currency: str,
    ) -> None:
        """Void ``authorization`` after the creation transaction failed with ``exc``."""
        if authorization is None or authorization.authorization_id is None:
            return
        outcome = self._compensator.void_after_failure(
            authorization.authorization_id,
            amount,
            currency,
            entity_type=self.entity_kind.value,
            reason=getattr(exc, "code", type(exc).__name__),
            error=exc,
        )
        if isinstance(exc, KioskError):
            exc.compensation = outcome

    # -- history --------------------------------------------------------------

    def _history_entry(
        self,
        status: Any,
        actor: UserInfo | None,
        reason: str | None = None,
    ) -> StatusHistoryEntry:
        return StatusHistoryEntry(
            status=getattr(status, "value", status),
            timestamp=self.clock.now(),
            actor_id=str(actor.id) if actor else SYSTEM_ACTOR,
            role=actor.role.value if actor else SYSTEM_ACTOR,
            reason=reason,
        )

    # -- post-commit publication ----------------------------------------------

    def _publish_or_flag(self, topic: str, payload: dict[str, Any], entity_id: UUID) -> bool:
        """Publish after commit; on failure persist the error and flag for review."""
        try:
            self._queue.publish(topic, payload)
            logger.info(
                "side_effect_enqueued",
                extra={"topic": topic, "entity_id": str(entity_id)},
            )
            return True
        except Exception as exc:
            logger.error(
                "side_effect_publish_failed",
                extra={"topic": topic, "entity_id": str(entity_id)},
                exc_info=True,
            )
            error = f"publish to {topic} failed: {exc}"

            def mark(tx: TransactionHandle) -> None:
                row = tx.get(self.entity_kind, entity_id)
                if row is not None:
                    row.processing_error = error

            try:
                self._repository.run_transaction(mark, name="mark_publish_failed")
            except Exception:
                logger.critical(
                    "processing_error_write_failed",
                    extra={"entity_id": str(entity_id), "topic": topic},
                    exc_info=True,
                )
            self._compensator.flag(
                ReviewKind.PUBLISH_FAILED,
                error,
                entity_type=self.entity_kind.value,
                entity_id=entity_id,
                detail={"topic": topic, "payload": payload},
            )
            return False

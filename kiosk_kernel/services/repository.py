"""
EntityRepository -- typed entity access and the optimistic transaction primitive.

Responsibility:
    Sole writer of persisted state.  Hands out frozen DTOs for reads outside
    a transaction and runs caller functions inside one database transaction
    through ``run_transaction``, re-running them from scratch when a
    concurrent writer invalidated what they read.

Architecture position:
    Kernel > Services -- imperative shell around SQLAlchemy sessions.
    Used by the lifecycle services and the side-effect worker.  They never
    keep ORM instances past the function given to ``run_transaction``.

Invariants enforced:
    - Atomicity: everything ``fn`` writes commits iff ``fn`` returns.
    - No lost updates: orders and bookings are versioned (compare-and-set
      on every UPDATE); counters (stock, loyalty balance, promo uses) are
      changed only by guarded relative UPDATEs such as
      ``available = available - :q WHERE available >= :q``.
    - Counters never go negative: a guarded UPDATE that matches no row
      raises the matching ResourceExhausted error and the transaction rolls
      back.
    - Timestamps: created_at / updated_at come from the injected Clock.

Failure modes:
    - Typed *NotFoundError from ``get`` / ``require``.
    - InventoryUnavailableError, InsufficientLoyaltyBalanceError,
      PromoCodeExhaustedError from the guarded counter updates.
    - TransactionConflictError once ``max_attempts`` conflicting attempts
      have been made.
    - Any other exception raised by ``fn`` rolls back and propagates.

Audit relevance:
    Every conflict retry and every exhausted transaction is logged with the
    transaction name and attempt number.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Callable, Iterable, Sequence, TypeVar
from uuid import UUID

from sqlalchemy import event, insert, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.orm.util import identity_key

from kiosk_kernel.db.base import TrackedBase
from kiosk_kernel.domain.clock import Clock
from kiosk_kernel.domain.dtos import ManualReviewRecord, PromoCodeInfo
from kiosk_kernel.domain.values import PaymentStatus
from kiosk_kernel.domain.workflows import RentalStatus
from kiosk_kernel.exceptions import (
    BoxNotFoundError,
    EntityNotFoundError,
    InsufficientLoyaltyBalanceError,
    InventoryUnavailableError,
    InvalidArgumentError,
    ManualReviewNotFoundError,
    OptimisticLockError,
    OrderNotFoundError,
    ProductNotFoundError,
    PromoCodeExhaustedError,
    PromoCodeNotFoundError,
    RentalBookingNotFoundError,
    RentalItemNotFoundError,
    TransactionConflictError,
    UserNotFoundError,
)
from kiosk_kernel.logging_config import get_logger
from kiosk_kernel.models import (
    Box,
    BoxStock,
    ManualReviewItem,
    Order,
    Product,
    PromoCode,
    RentalBooking,
    RentalItem,
    StockKind,
    User,
)

logger = get_logger("services.repository")

T = TypeVar("T")

# PostgreSQL SQLSTATEs worth a retry: serialization_failure, deadlock_detected
_RETRYABLE_PGCODES = frozenset({"40001", "40P01"})
_SQLITE_LOCK_MESSAGES = ("database is locked", "database table is locked")


class EntityKind(str, Enum):
    USER = "user"
    BOX = "box"
    PRODUCT = "product"
    RENTAL_ITEM = "rental_item"
    PROMO_CODE = "promo_code"
    ORDER = "order"
    RENTAL_BOOKING = "rental_booking"
    MANUAL_REVIEW = "manual_review"


_KIND_MODELS: dict[EntityKind, tuple[type, type[EntityNotFoundError]]] = {
    EntityKind.USER: (User, UserNotFoundError),
    EntityKind.BOX: (Box, BoxNotFoundError),
    EntityKind.PRODUCT: (Product, ProductNotFoundError),
    EntityKind.RENTAL_ITEM: (RentalItem, RentalItemNotFoundError),
    EntityKind.PROMO_CODE: (PromoCode, PromoCodeNotFoundError),
    EntityKind.ORDER: (Order, OrderNotFoundError),
    EntityKind.RENTAL_BOOKING: (RentalBooking, RentalBookingNotFoundError),
    EntityKind.MANUAL_REVIEW: (ManualReviewItem, ManualReviewNotFoundError),
}


def is_retryable_conflict(exc: BaseException) -> bool:
    """True for errors caused by a concurrent writer rather than by the data."""
    if isinstance(exc, (StaleDataError, OptimisticLockError)):
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
        if any(m in message for m in _SQLITE_LOCK_MESSAGES):
            return True
    if isinstance(exc, DBAPIError):
        pgcode = getattr(exc.orig, "pgcode", None)
        if pgcode in _RETRYABLE_PGCODES:
            return True
    return False


def _stamp_timestamps(clock: Clock) -> Callable[..., None]:
    def before_flush(session: Session, flush_context: Any, instances: Any) -> None:
        now = clock.now()
        for obj in session.new:
            if isinstance(obj, TrackedBase):
                if obj.created_at is None:
                    obj.created_at = now
                obj.updated_at = now
        for obj in session.dirty:
            if isinstance(obj, TrackedBase) and session.is_modified(obj):
                obj.updated_at = now

    return before_flush


class TransactionHandle:
    """
    Read/write access inside one ``run_transaction`` attempt.

    Contract:
        Instances returned by ``get`` / ``require`` are attached to the
        attempt's session; mutate them in place and the changes commit with
        the transaction.  They must not escape ``fn``.
    """

    def __init__(self, session: Session, clock: Clock):
        self._session = session
        self._clock = clock

    @property
    def session(self) -> Session:
        return self._session

    def now(self):
        return self._clock.now()

    # -- entity access ------------------------------------------------------

    def get(self, kind: EntityKind, entity_id: UUID) -> Any | None:
        model, _ = _KIND_MODELS[EntityKind(kind)]
        return self._session.get(model, entity_id)

    def require(self, kind: EntityKind, entity_id: UUID) -> Any:
        model, not_found = _KIND_MODELS[EntityKind(kind)]
        obj = self._session.get(model, entity_id)
        if obj is None:
            raise not_found(entity_id)
        return obj

    def find_promo_code(self, code: str) -> PromoCode | None:
        return self._session.scalars(
            select(PromoCode).where(PromoCode.code == code)
        ).one_or_none()

    def add(self, obj: T) -> T:
        self._session.add(obj)
        return obj

    def flush(self) -> None:
        self._session.flush()

    # -- inventory ------------------------------------------------------------

    def stock_level(self, box_id: UUID, item_id: UUID) -> int:
        level = self._session.scalar(
            select(BoxStock.available).where(
                BoxStock.box_id == box_id,
                BoxStock.item_id == item_id,
            )
        )
        return level or 0

    def box_inventory(self, box_id: UUID) -> dict[UUID, int]:
        rows = self._session.execute(
            select(BoxStock.item_id, BoxStock.available).where(BoxStock.box_id == box_id)
        )
        return {item_id: available for item_id, available in rows}

    def take_stock(self, box_id: UUID, item_id: UUID, quantity: int) -> None:
        """Decrement stock by ``quantity``; never below zero."""
        if quantity <= 0:
            raise InvalidArgumentError("quantity", f"must be positive, got {quantity}")
        result = self._session.execute(
            update(BoxStock)
            .where(
                BoxStock.box_id == box_id,
                BoxStock.item_id == item_id,
                BoxStock.available >= quantity,
            )
            .values(available=BoxStock.available - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InventoryUnavailableError(box_id, item_id, quantity)

    def restore_stock(
        self,
        box_id: UUID,
        item_id: UUID,
        quantity: int,
        item_kind: str = StockKind.PRODUCT,
    ) -> None:
        """Increment stock by ``quantity``, creating the stock row if absent."""
        if quantity <= 0:
            raise InvalidArgumentError("quantity", f"must be positive, got {quantity}")
        result = self._session.execute(
            update(BoxStock)
            .where(BoxStock.box_id == box_id, BoxStock.item_id == item_id)
            .values(available=BoxStock.available + quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return
        try:
            self._session.execute(
                insert(BoxStock).values(
                    box_id=box_id,
                    item_id=item_id,
                    item_kind=item_kind,
                    available=quantity,
                )
            )
        except IntegrityError as exc:
            # Another transaction created the row first
            raise OptimisticLockError("BoxStock", f"{box_id}/{item_id}") from exc

    # -- loyalty balance ----------------------------------------------------

    def debit_loyalty(self, user_id: UUID, amount: int) -> None:
        if amount <= 0:
            return
        result = self._session.execute(
            update(User)
            .where(User.id == user_id, User.loyalty_balance >= amount)
            .values(loyalty_balance=User.loyalty_balance - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientLoyaltyBalanceError(user_id, amount)
        self._expire_cached(User, user_id, "loyalty_balance")

    def credit_loyalty(self, user_id: UUID, amount: int) -> None:
        if amount <= 0:
            return
        result = self._session.execute(
            update(User)
            .where(User.id == user_id)
            .values(loyalty_balance=User.loyalty_balance + amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise UserNotFoundError(user_id)
        self._expire_cached(User, user_id, "loyalty_balance")

    # -- promo codes --------------------------------------------------------

    def redeem_promo_code(self, promo: PromoCode) -> None:
        """Count one use of ``promo`` unless its cap is reached."""
        result = self._session.execute(
            update(PromoCode)
            .where(
                PromoCode.id == promo.id,
                (PromoCode.max_uses.is_(None)) | (PromoCode.uses_count < PromoCode.max_uses),
            )
            .values(uses_count=PromoCode.uses_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise PromoCodeExhaustedError(promo.code)
        self._expire_cached(PromoCode, promo.id, "uses_count")

    # -- manual review --------------------------------------------------------

    def record_review_item(
        self,
        kind: str,
        reason: str,
        *,
        entity_type: str | None = None,
        entity_id: UUID | None = None,
        authorization_id: str | None = None,
        amount: int | None = None,
        currency: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> ManualReviewItem:
        item = ManualReviewItem(
            kind=str(getattr(kind, "value", kind)),
            reason=reason,
            entity_type=entity_type,
            entity_id=entity_id,
            authorization_id=authorization_id,
            amount=amount,
            currency=currency,
            detail=dict(detail or {}),
        )
        self._session.add(item)
        return item

    def _expire_cached(self, model: type, pk: UUID, *attrs: str) -> None:
        obj = self._session.identity_map.get(identity_key(model, pk))
        if obj is not None:
            self._session.expire(obj, list(attrs))


class EntityRepository:
    """
    Entity reads and optimistic multi-entity transactions.

    Contract:
        ``run_transaction(fn)`` opens a fresh session per attempt, calls
        ``fn(handle)``, and commits.  On a concurrency conflict the attempt
        is rolled back and ``fn`` runs again against fresh state, so ``fn``
        must not have side effects outside the handle.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock,
        max_attempts: int = 5,
        backoff_seconds: float = 0.01,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session_factory = session_factory
        self._clock = clock
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep

    @property
    def clock(self) -> Clock:
        return self._clock

    def _new_session(self) -> Session:
        session = self._session_factory()
        event.listen(session, "before_flush", _stamp_timestamps(self._clock))
        return session

    # -- reads ----------------------------------------------------------------

    def get(self, kind: EntityKind, entity_id: UUID) -> Any:
        """
        Read one entity as a DTO.

        Raises:
            The kind's *NotFoundError when absent.
        """
        kind = EntityKind(kind)
        model, not_found = _KIND_MODELS[kind]
        with self._new_session() as session:
            obj = session.get(model, entity_id)
            if obj is None:
                raise not_found(entity_id)
            return self._to_dto(session, kind, obj)

    def get_many(self, kind: EntityKind, ids: Sequence[UUID]) -> list[Any | None]:
        """Read several entities; result order matches ``ids``, missing as None."""
        kind = EntityKind(kind)
        model, _ = _KIND_MODELS[kind]
        if not ids:
            return []
        with self._new_session() as session:
            rows = session.scalars(select(model).where(model.id.in_(set(ids)))).all()
            found = {row.id: self._to_dto(session, kind, row) for row in rows}
        return [found.get(entity_id) for entity_id in ids]

    def require_many(self, kind: EntityKind, ids: Sequence[UUID]) -> list[Any]:
        """Like get_many, raising for the first missing id."""
        _, not_found = _KIND_MODELS[EntityKind(kind)]
        results = self.get_many(kind, ids)
        for entity_id, dto in zip(ids, results):
            if dto is None:
                raise not_found(entity_id)
        return results

    def get_promo_code(self, code: str) -> PromoCodeInfo:
        with self._new_session() as session:
            promo = session.scalars(
                select(PromoCode).where(PromoCode.code == code)
            ).one_or_none()
            if promo is None:
                raise PromoCodeNotFoundError(code)
            return promo.to_dto()

    def list_review_items(
        self,
        kind: str | None = None,
        entity_id: UUID | None = None,
        unresolved_only: bool = False,
    ) -> list[ManualReviewRecord]:
        stmt = select(ManualReviewItem).order_by(ManualReviewItem.created_at)
        if kind is not None:
            stmt = stmt.where(ManualReviewItem.kind == str(getattr(kind, "value", kind)))
        if entity_id is not None:
            stmt = stmt.where(ManualReviewItem.entity_id == entity_id)
        if unresolved_only:
            stmt = stmt.where(ManualReviewItem.resolved_at.is_(None))
        with self._new_session() as session:
            return [item.to_dto() for item in session.scalars(stmt)]

    def find_overdue_rental_ids(self, as_of) -> list[UUID]:
        """Picked-up bookings whose expected return time has passed."""
        stmt = select(RentalBooking.id).where(
            RentalBooking.status == RentalStatus.PICKED_UP.value,
            RentalBooking.expected_return_at.is_not(None),
            RentalBooking.expected_return_at < as_of,
        )
        with self._new_session() as session:
            return list(session.scalars(stmt))

    def find_stale_action_required_booking_ids(self, authorized_before) -> list[UUID]:
        """Pending-pickup bookings whose deposit still waits on the customer."""
        stmt = select(RentalBooking.id).where(
            RentalBooking.status == RentalStatus.PENDING_PICKUP.value,
            RentalBooking.payment_status == PaymentStatus.ACTION_REQUIRED.value,
            RentalBooking.authorized_at < authorized_before,
        )
        with self._new_session() as session:
            return list(session.scalars(stmt))

    def _to_dto(self, session: Session, kind: EntityKind, obj: Any) -> Any:
        if kind == EntityKind.BOX:
            return obj.to_dto(TransactionHandle(session, self._clock).box_inventory(obj.id))
        return obj.to_dto()

    # -- writes ---------------------------------------------------------------

    def run_transaction(
        self,
        fn: Callable[[TransactionHandle], T],
        *,
        name: str = "transaction",
    ) -> T:
        """
        Run ``fn`` atomically, retrying on optimistic conflicts.

        Returns:
            Whatever ``fn`` returned on the committed attempt.

        Raises:
            TransactionConflictError: after ``max_attempts`` conflicts.
            Anything else ``fn`` raises, after rollback.
        """
        last_conflict: BaseException | None = None
        for attempt in range(1, self._max_attempts + 1):
            session = self._new_session()
            try:
                result = fn(TransactionHandle(session, self._clock))
                session.commit()
                logger.debug(
                    "transaction_committed",
                    extra={"transaction": name, "attempt": attempt},
                )
                return result
            except Exception as exc:
                session.rollback()
                if not is_retryable_conflict(exc):
                    raise
                last_conflict = exc
                logger.warning(
                    "transaction_conflict",
                    extra={
                        "transaction": name,
                        "attempt": attempt,
                        "max_attempts": self._max_attempts,
                        "conflict_type": type(exc).__name__,
                    },
                )
            finally:
                session.close()
            if attempt < self._max_attempts:
                self._sleep(self._backoff_seconds * attempt)

        logger.error(
            "transaction_attempts_exhausted",
            extra={
                "transaction": name,
                "attempts": self._max_attempts,
                "conflict_type": type(last_conflict).__name__,
            },
        )
        raise TransactionConflictError(name, self._max_attempts) from last_conflict

    def record_review_item(self, kind: str, reason: str, **fields: Any) -> ManualReviewRecord:
        """Persist a manual-review item in its own transaction."""

        def write(tx: TransactionHandle) -> ManualReviewRecord:
            item = tx.record_review_item(kind, reason, **fields)
            tx.flush()
            return item.to_dto()

        return self.run_transaction(write, name="record_review_item")

    def seed(self, objects: Iterable[Any]) -> None:
        """Insert fixture or reference rows in one transaction."""
        objects = list(objects)

        def write(tx: TransactionHandle) -> None:
            for obj in objects:
                tx.add(obj)

        self.run_transaction(write, name="seed")

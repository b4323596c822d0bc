"""
Payment gateway adapter -- authorize, void, finalize and refund.

Responsibility:
    The single boundary between the lifecycle engine and the external
    payment processor.  Every call returns a result object; transport
    failures never escape as exceptions from ``TimeoutGuardedGateway``.

Architecture position:
    Kernel > Services.  Called by the lifecycle services (authorize, void,
    capture on delivery, refund on cancellation) and by the deposit
    settlement worker (finalize).

Invariants enforced:
    - No internal retries.  A financial call is attempted once; callers
      decide whether to compensate, flag or redeliver.
    - finalize captures ``min(final_amount, original_amount)`` when
      ``final_amount > 0`` and voids when it is 0.
    - Every call through ``TimeoutGuardedGateway`` is bounded by a timeout.
      A timed-out or crashed call is reported with ``status_unknown=True``
      and is never assumed to have succeeded.

Failure modes:
    - Result objects with ``success=False`` and a gateway ``error_code``.
    - ``status_unknown=True`` when the processor's answer was never seen.

Audit relevance:
    Authorization, settlement and refund ids returned here are persisted on
    the order or booking and on manual-review items.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections import Counter, deque
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, TypeVar

from kiosk_kernel.logging_config import get_logger

logger = get_logger("services.payment_gateway")

R = TypeVar("R")


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class AuthorizationResult:
    success: bool
    authorization_id: str | None = None
    requires_action: bool = False
    action_url: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    status_unknown: bool = False


@dataclass(frozen=True)
class VoidResult:
    success: bool
    error_code: str | None = None
    error_message: str | None = None
    status_unknown: bool = False


@dataclass(frozen=True)
class SettlementResult:
    success: bool
    settlement_id: str | None = None
    amount_charged: int = 0
    voided: bool = False
    error_code: str | None = None
    error_message: str | None = None
    status_unknown: bool = False


@dataclass(frozen=True)
class RefundResult:
    success: bool
    refund_id: str | None = None
    amount_refunded: int = 0
    error_code: str | None = None
    error_message: str | None = None
    status_unknown: bool = False


class PaymentGateway(ABC):
    """Abstract payment processor."""

    @abstractmethod
    def authorize(
        self,
        amount: int,
        currency: str,
        customer_ref: str | None,
        description: str,
        payment_token: str | None = None,
    ) -> AuthorizationResult:
        ...

    @abstractmethod
    def void(self, authorization_id: str) -> VoidResult:
        ...

    @abstractmethod
    def finalize(
        self,
        authorization_id: str,
        final_amount: int,
        original_amount: int,
        currency: str,
    ) -> SettlementResult:
        ...

    @abstractmethod
    def refund(
        self,
        settlement_id: str,
        amount: int,
        currency: str,
        reason: str,
    ) -> RefundResult:
        ...


# =============================================================================
# Simulated processor
# =============================================================================


class Fault(str, Enum):
    """Scripted misbehaviour for one gateway call."""

    DECLINE = "decline"                  # success=False with an error code
    ACTION_REQUIRED = "action_required"  # authorize: no hold, customer step needed
    ACTION_PENDING = "action_pending"    # authorize: hold placed, customer step pending
    RAISE = "raise"                      # transport error (ConnectionError)
    HANG = "hang"                        # sleep for ``delay`` before answering


@dataclass
class _ScriptedFault:
    fault: Fault
    error_code: str | None = None
    action_url: str | None = None
    delay: float = 0.0


@dataclass
class _Hold:
    amount: int
    currency: str
    customer_ref: str | None
    state: str = "authorized"  # authorized | voided | captured
    captured: int = 0


@dataclass
class _Settlement:
    authorization_id: str
    amount: int
    currency: str
    refunded: int = 0


class SimulatedPaymentGateway(PaymentGateway):
    """
    Deterministic in-process processor.

    Holds authorization state so tests can assert what was voided or
    captured, and counts every call per operation.  Faults are scripted per
    operation with ``inject`` and consumed in order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._faults: dict[str, deque[_ScriptedFault]] = {}
        self._holds: dict[str, _Hold] = {}
        self._settlements: dict[str, _Settlement] = {}
        self._seq = 0
        self.calls: Counter[str] = Counter()
        self.call_log: list[tuple[str, dict[str, Any]]] = []

    def inject(
        self,
        operation: str,
        fault: Fault,
        *,
        times: int = 1,
        error_code: str | None = None,
        action_url: str | None = None,
        delay: float = 0.0,
    ) -> None:
        """Make the next ``times`` calls of ``operation`` misbehave."""
        scripted = _ScriptedFault(Fault(fault), error_code, action_url, delay)
        with self._lock:
            queue = self._faults.setdefault(operation, deque())
            queue.extend(scripted for _ in range(times))

    def clear_faults(self) -> None:
        with self._lock:
            self._faults.clear()

    def hold(self, authorization_id: str) -> _Hold | None:
        with self._lock:
            return self._holds.get(authorization_id)

    def holds_in_state(self, state: str) -> list[str]:
        with self._lock:
            return [auth_id for auth_id, h in self._holds.items() if h.state == state]

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq:06d}"

    def _enter(self, operation: str, **args: Any) -> _ScriptedFault | None:
        with self._lock:
            self.calls[operation] += 1
            self.call_log.append((operation, args))
            queue = self._faults.get(operation)
            scripted = queue.popleft() if queue else None
        if scripted is None:
            return None
        if scripted.fault == Fault.HANG:
            time.sleep(scripted.delay)
            return None
        if scripted.fault == Fault.RAISE:
            raise ConnectionError(f"simulated transport failure in {operation}")
        return scripted

    def authorize(self, amount, currency, customer_ref, description, payment_token=None):
        scripted = self._enter(
            "authorize", amount=amount, currency=currency, customer_ref=customer_ref,
        )
        if scripted is not None:
            if scripted.fault == Fault.ACTION_REQUIRED:
                return AuthorizationResult(
                    success=False,
                    requires_action=True,
                    action_url=scripted.action_url or "https://pay.example/3ds",
                    error_code=scripted.error_code or "authentication_required",
                )
            if scripted.fault == Fault.DECLINE:
                return AuthorizationResult(
                    success=False,
                    error_code=scripted.error_code or "card_declined",
                    error_message="Simulated decline",
                )
        if amount <= 0:
            return AuthorizationResult(success=False, error_code="invalid_amount")
        with self._lock:
            auth_id = self._next_id("auth")
            self._holds[auth_id] = _Hold(amount, currency, customer_ref)
        if scripted is not None and scripted.fault == Fault.ACTION_PENDING:
            return AuthorizationResult(
                success=True,
                authorization_id=auth_id,
                requires_action=True,
                action_url=scripted.action_url or "https://pay.example/3ds",
            )
        return AuthorizationResult(success=True, authorization_id=auth_id)

    def void(self, authorization_id):
        scripted = self._enter("void", authorization_id=authorization_id)
        if scripted is not None:
            return VoidResult(success=False, error_code=scripted.error_code or "void_declined")
        with self._lock:
            hold = self._holds.get(authorization_id)
            if hold is None:
                return VoidResult(success=False, error_code="authorization_not_found")
            if hold.state == "captured":
                return VoidResult(success=False, error_code="already_captured")
            hold.state = "voided"
        return VoidResult(success=True)

    def finalize(self, authorization_id, final_amount, original_amount, currency):
        scripted = self._enter(
            "finalize",
            authorization_id=authorization_id,
            final_amount=final_amount,
            original_amount=original_amount,
        )
        if scripted is not None:
            return SettlementResult(
                success=False, error_code=scripted.error_code or "capture_declined",
            )
        with self._lock:
            hold = self._holds.get(authorization_id)
            if hold is None:
                return SettlementResult(success=False, error_code="authorization_not_found")
            if hold.state != "authorized":
                return SettlementResult(success=False, error_code=f"authorization_{hold.state}")
            if final_amount <= 0:
                hold.state = "voided"
                return SettlementResult(success=True, voided=True)
            amount = min(final_amount, original_amount, hold.amount)
            hold.state = "captured"
            hold.captured = amount
            settlement_id = self._next_id("stl")
            self._settlements[settlement_id] = _Settlement(authorization_id, amount, currency)
        return SettlementResult(success=True, settlement_id=settlement_id, amount_charged=amount)

    def refund(self, settlement_id, amount, currency, reason):
        scripted = self._enter("refund", settlement_id=settlement_id, amount=amount)
        if scripted is not None:
            return RefundResult(success=False, error_code=scripted.error_code or "refund_declined")
        with self._lock:
            settlement = self._settlements.get(settlement_id)
            if settlement is None:
                return RefundResult(success=False, error_code="settlement_not_found")
            if amount <= 0 or settlement.refunded + amount > settlement.amount:
                return RefundResult(success=False, error_code="refund_exceeds_capture")
            settlement.refunded += amount
            refund_id = self._next_id("rfd")
        return RefundResult(success=True, refund_id=refund_id, amount_refunded=amount)


# =============================================================================
# Timeout guard
# =============================================================================


class TimeoutGuardedGateway(PaymentGateway):
    """
    Bounds every call of an inner gateway by ``timeout_seconds``.

    Contract:
        Never raises.  A call that times out or raises returns a failure
        result with ``status_unknown=True`` and error code ``timeout`` or
        ``network_error``.  The underlying call is not retried; a hung call
        keeps its worker thread until the inner gateway returns.
    """

    def __init__(
        self,
        inner: PaymentGateway,
        timeout_seconds: float = 10.0,
        max_workers: int = 8,
    ):
        self._inner = inner
        self._timeout = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="payment-gateway",
        )

    @property
    def inner(self) -> PaymentGateway:
        return self._inner

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _guarded(
        self,
        operation: str,
        call: Callable[[], R],
        unknown: Callable[[str, str], R],
        context: dict[str, Any],
    ) -> R:
        future = self._executor.submit(call)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeoutError:
            logger.warning(
                "gateway_call_timed_out",
                extra={"operation": operation, "timeout_seconds": self._timeout, **context},
            )
            return unknown("timeout", f"{operation} exceeded {self._timeout}s")
        except Exception as exc:
            logger.warning(
                "gateway_call_failed",
                extra={"operation": operation, "error": str(exc), **context},
                exc_info=True,
            )
            return unknown("network_error", str(exc))

    def authorize(self, amount, currency, customer_ref, description, payment_token=None):
        return self._guarded(
            "authorize",
            lambda: self._inner.authorize(
                amount, currency, customer_ref, description, payment_token,
            ),
            lambda code, msg: AuthorizationResult(
                success=False, error_code=code, error_message=msg, status_unknown=True,
            ),
            {"amount": amount, "currency": currency},
        )

    def void(self, authorization_id):
        return self._guarded(
            "void",
            lambda: self._inner.void(authorization_id),
            lambda code, msg: VoidResult(
                success=False, error_code=code, error_message=msg, status_unknown=True,
            ),
            {"authorization_id": authorization_id},
        )

    def finalize(self, authorization_id, final_amount, original_amount, currency):
        return self._guarded(
            "finalize",
            lambda: self._inner.finalize(
                authorization_id, final_amount, original_amount, currency,
            ),
            lambda code, msg: SettlementResult(
                success=False, error_code=code, error_message=msg, status_unknown=True,
            ),
            {"authorization_id": authorization_id, "final_amount": final_amount},
        )

    def refund(self, settlement_id, amount, currency, reason):
        return self._guarded(
            "refund",
            lambda: self._inner.refund(settlement_id, amount, currency, reason),
            lambda code, msg: RefundResult(
                success=False, error_code=code, error_message=msg, status_unknown=True,
            ),
            {"settlement_id": settlement_id, "amount": amount},
        )

"""
SideChannel -- fire-and-forget dispatch of notifications, activity log
entries and operator alerts.

Responsibility:
    Runs each side effect as an independent task that cannot change the
    outcome of the operation that triggered it.  A failing task is logged
    and dropped; it is never retried and never re-raised.

Architecture position:
    Kernel > Services.  Owned by the lifecycle services, the compensator
    and the side-effect worker; wraps the Notifier, ActivityLog and
    OperatorAlerts collaborators.

Invariants enforced:
    - Dispatch never raises into the caller, even when the executor has
      been shut down.
    - Log context (correlation id, actor, operation) is copied into the
      task so its log lines correlate with the originating request.
"""

from __future__ import annotations

import contextvars
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Mapping
from uuid import UUID

from kiosk_kernel.logging_config import get_logger
from kiosk_kernel.services.collaborators import (
    ActivityLog,
    LoggingActivityLog,
    LoggingNotifier,
    LoggingOperatorAlerts,
    Notifier,
    OperatorAlerts,
)

logger = get_logger("services.side_channel")


class SideChannel:
    """Background thread pool for side effects."""

    def __init__(
        self,
        notifier: Notifier | None = None,
        activity_log: ActivityLog | None = None,
        alerts: OperatorAlerts | None = None,
        max_workers: int = 4,
    ):
        self.notifier = notifier or LoggingNotifier()
        self.activity_log = activity_log or LoggingActivityLog()
        self.alerts = alerts or LoggingOperatorAlerts()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="side-channel",
        )
        self._pending: set[Future] = set()

    def dispatch(self, task_name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Run ``fn(*args, **kwargs)`` in the background; failures are logged only."""
        ctx = contextvars.copy_context()
        try:
            future = self._executor.submit(ctx.run, self._run_task, task_name, fn, args, kwargs)
        except RuntimeError:
            logger.warning("side_channel_closed", extra={"task": task_name})
            return
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    @staticmethod
    def _run_task(
        task_name: str,
        fn: Callable[..., Any],
        args: tuple,
        kwargs: dict[str, Any],
    ) -> None:
        try:
            fn(*args, **kwargs)
        except Exception:
            logger.exception("side_effect_task_failed", extra={"task": task_name})

    # -- conveniences -------------------------------------------------------

    def notify(
        self,
        target_user_id: UUID | None,
        notification_type: str,
        params: Mapping[str, Any] | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> None:
        if target_user_id is None:
            return
        self.dispatch(
            f"notify:{notification_type}",
            self.notifier.send_notification,
            target_user_id,
            notification_type,
            f"notification.{notification_type}.title",
            f"notification.{notification_type}.message",
            dict(params or {}),
            dict(payload or {}),
        )

    def log_activity(
        self,
        action_type: str,
        details: Mapping[str, Any],
        actor_id: UUID | None,
    ) -> None:
        self.dispatch(
            f"activity:{action_type}",
            self.activity_log.log_activity,
            action_type,
            dict(details),
            actor_id,
        )

    def alert(self, severity: str, summary: str, details: Mapping[str, Any]) -> None:
        self.dispatch(f"alert:{summary}", self.alerts.alert, severity, summary, dict(details))

    def drain(self, timeout: float | None = None) -> None:
        """Wait for every task dispatched so far."""
        wait(list(self._pending), timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class InlineSideChannel(SideChannel):
    """Runs tasks synchronously in the caller's thread, with the same isolation."""

    def __init__(
        self,
        notifier: Notifier | None = None,
        activity_log: ActivityLog | None = None,
        alerts: OperatorAlerts | None = None,
    ):
        self.notifier = notifier or LoggingNotifier()
        self.activity_log = activity_log or LoggingActivityLog()
        self.alerts = alerts or LoggingOperatorAlerts()
        self._pending = set()

    def dispatch(self, task_name, fn, *args, **kwargs) -> None:
        self._run_task(task_name, fn, args, kwargs)

    def drain(self, timeout=None) -> None:
        return None

    def shutdown(self, wait=True) -> None:
        return None

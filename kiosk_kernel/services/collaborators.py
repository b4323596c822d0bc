"""
Collaborator interfaces -- permission checks, notifications, activity log,
operator alerts and settings lookup.

Responsibility:
    The black-box calls the lifecycle engine makes into systems it does not
    own.  Each is a Protocol plus a default implementation good enough for
    a single process: a config-driven role table and structured log sinks.

Architecture position:
    Kernel > Services.  Consumed by the lifecycle services (permission
    checks) and by ``SideChannel`` (notifications, activity log, alerts).
    Production deployments inject their own implementations.

Failure modes:
    - Notifier / ActivityLog / OperatorAlerts may raise; the side channel
      logs and drops such failures.
    - PermissionChecker must not raise for an unknown role; it answers
      False.
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol
from uuid import UUID

from kiosk_kernel.logging_config import get_logger

logger = get_logger("services.collaborators")

WILDCARD_PERMISSION = "*"


class PermissionChecker(Protocol):
    def check_permission(
        self,
        actor_id: UUID,
        role: str,
        permission_key: str,
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        ...


class Notifier(Protocol):
    def send_notification(
        self,
        target_user_id: UUID,
        notification_type: str,
        title_key: str,
        message_key: str,
        params: Mapping[str, Any],
        payload: Mapping[str, Any],
    ) -> None:
        ...


class ActivityLog(Protocol):
    def log_activity(
        self,
        action_type: str,
        details: Mapping[str, Any],
        actor_id: UUID | None,
    ) -> None:
        ...


class OperatorAlerts(Protocol):
    def alert(self, severity: str, summary: str, details: Mapping[str, Any]) -> None:
        ...


class ConfigSource(Protocol):
    def fetch_config(self, kind: str) -> Any:
        ...


class RolePermissionChecker:
    """
    Role table lookup.

    ``role_permissions`` maps a role name to its granted keys; the key
    ``*`` grants every permission.
    """

    def __init__(self, role_permissions: Mapping[str, frozenset[str]]):
        self._role_permissions = {
            str(role): frozenset(keys) for role, keys in role_permissions.items()
        }

    def check_permission(self, actor_id, role, permission_key, context=None) -> bool:
        granted = self._role_permissions.get(str(getattr(role, "value", role)), frozenset())
        allowed = WILDCARD_PERMISSION in granted or permission_key in granted
        if not allowed:
            logger.info(
                "permission_denied",
                extra={
                    "actor_id": str(actor_id),
                    "role": str(getattr(role, "value", role)),
                    "permission": permission_key,
                },
            )
        return allowed


class LoggingNotifier:
    """Writes notifications to the structured log instead of pushing them."""

    def send_notification(
        self, target_user_id, notification_type, title_key, message_key, params, payload,
    ) -> None:
        logger.info(
            "notification_sent",
            extra={
                "target_user_id": str(target_user_id),
                "notification_type": notification_type,
                "title_key": title_key,
                "message_key": message_key,
                "params": dict(params),
                "payload": dict(payload),
            },
        )


class LoggingActivityLog:
    def log_activity(self, action_type, details, actor_id) -> None:
        logger.info(
            "activity_logged",
            extra={
                "action_type": action_type,
                "details": dict(details),
                "activity_actor_id": str(actor_id) if actor_id else None,
            },
        )


class LoggingOperatorAlerts:
    """Emits operator alerts as CRITICAL log records."""

    def alert(self, severity, summary, details) -> None:
        logger.critical(
            "operator_alert",
            extra={"severity": severity, "summary": summary, "details": dict(details)},
        )


class StaticConfigSource:
    """ConfigSource over a fixed mapping of section name to settings."""

    def __init__(self, sections: Mapping[str, Any]):
        self._sections = dict(sections)

    def fetch_config(self, kind: str) -> Any:
        try:
            return self._sections[kind]
        except KeyError:
            raise KeyError(f"Unknown config kind: {kind}") from None

"""
kiosk_config -- single public entrypoint for kiosk settings.

Responsibility:
    Provides runtime settings through ``get_settings()``.  Services never
    read YAML or environment variables themselves; they receive plain
    values built from ``KioskSettings`` by ``kiosk_config.bridges``.

Architecture position:
    Configuration -- sits above ``kiosk_kernel``.  The kernel MUST NEVER
    import from ``kiosk_config``.

Failure modes:
    - ``FileNotFoundError`` -- override file missing.
    - ``ValueError`` -- unknown sections or out-of-range values.

Audit relevance:
    Every load emits a ``kiosk_config_loaded`` log entry with the checksum
    of the merged document, tying behaviour to an exact configuration.
"""

from __future__ import annotations

import logging
from pathlib import Path

from kiosk_config.loader import load_settings
from kiosk_config.schema import (
    DatabaseSettings,
    KioskSettings,
    PaymentSettings,
    PermissionSettings,
    QueueSettings,
    RentalSettings,
    RepositorySettings,
    SideChannelSettings,
)

_logger = logging.getLogger("kiosk_kernel.config")


def get_settings(config_path: Path | str | None = None) -> KioskSettings:
    """The public configuration entrypoint."""
    settings = load_settings(config_path)
    _logger.info(
        "kiosk_config_loaded",
        extra={
            "checksum": settings.checksum,
            "override": str(config_path) if config_path else None,
            "role_count": len(settings.permissions.roles),
        },
    )
    return settings


__all__ = [
    "get_settings",
    "load_settings",
    "KioskSettings",
    "DatabaseSettings",
    "RentalSettings",
    "PaymentSettings",
    "RepositorySettings",
    "QueueSettings",
    "SideChannelSettings",
    "PermissionSettings",
]

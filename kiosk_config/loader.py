"""
Configuration Loader (``kiosk_config.loader``).

Responsibility
--------------
Loads the packaged ``defaults.yaml`` plus an optional override file and
parses the merged document into ``kiosk_config.schema`` dataclasses.

Architecture position
---------------------
**Config layer**.  No dependency on services; the kernel never imports
this package.  ``kiosk_config.bridges`` turns settings into kernel inputs.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Override files are deep-merged: a mapping in the override updates the
  matching mapping in the defaults key by key; any other value replaces it.
* Unknown top-level sections are rejected with ``ValueError``.
* ``compute_checksum`` produces a deterministic SHA-256 of the merged
  document.

Failure modes
-------------
* Missing override file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Negative fees, non-positive attempts or intervals  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Any

import yaml

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

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"
ENV_VAR = "KIOSK_CONFIG"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return ``base`` updated recursively with ``override``; inputs untouched."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def compute_checksum(data: dict[str, Any]) -> str:
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _non_negative(section: str, key: str, value: Any) -> int:
    value = int(value)
    if value < 0:
        raise ValueError(f"{section}.{key} must not be negative, got {value}")
    return value


def _positive(section: str, key: str, value: Any) -> Any:
    if value <= 0:
        raise ValueError(f"{section}.{key} must be positive, got {value}")
    return value


def parse_database(data: dict[str, Any]) -> DatabaseSettings:
    defaults = DatabaseSettings()
    return DatabaseSettings(
        url=str(data.get("url", defaults.url)),
        echo=bool(data.get("echo", defaults.echo)),
        pool_size=_positive("database", "pool_size", int(data.get("pool_size", defaults.pool_size))),
        max_overflow=_non_negative("database", "max_overflow", data.get("max_overflow", defaults.max_overflow)),
        sqlite_busy_timeout_seconds=_positive(
            "database",
            "sqlite_busy_timeout_seconds",
            float(data.get("sqlite_busy_timeout_seconds", defaults.sqlite_busy_timeout_seconds)),
        ),
    )


def parse_rental(data: dict[str, Any]) -> RentalSettings:
    return RentalSettings(
        overtime_interval_minutes=_positive(
            "rental", "overtime_interval_minutes", int(data.get("overtime_interval_minutes", 60)),
        ),
        overtime_fee=_non_negative("rental", "overtime_fee", data.get("overtime_fee", 0)),
        cleaning_fee=_non_negative("rental", "cleaning_fee", data.get("cleaning_fee", 0)),
        default_rental_hours=_positive(
            "rental", "default_rental_hours", int(data.get("default_rental_hours", 24)),
        ),
        action_required_ttl_minutes=_positive(
            "rental", "action_required_ttl_minutes", int(data.get("action_required_ttl_minutes", 30)),
        ),
    )


def parse_payment(data: dict[str, Any]) -> PaymentSettings:
    defaults = PaymentSettings()
    return PaymentSettings(
        timeout_seconds=_positive(
            "payment", "timeout_seconds", float(data.get("timeout_seconds", 10.0)),
        ),
        authorization_methods=frozenset(
            data.get("authorization_methods", defaults.authorization_methods)
        ),
        courier_methods=frozenset(data.get("courier_methods", defaults.courier_methods)),
    )


def parse_repository(data: dict[str, Any]) -> RepositorySettings:
    return RepositorySettings(
        max_attempts=_positive("repository", "max_attempts", int(data.get("max_attempts", 5))),
        backoff_seconds=float(data.get("backoff_seconds", 0.02)),
    )


def parse_queue(data: dict[str, Any]) -> QueueSettings:
    defaults = QueueSettings()
    return QueueSettings(
        order_cancellation_topic=data.get(
            "order_cancellation_topic", defaults.order_cancellation_topic,
        ),
        rental_deposit_topic=data.get("rental_deposit_topic", defaults.rental_deposit_topic),
        max_deliveries=_positive("queue", "max_deliveries", int(data.get("max_deliveries", 5))),
        receive_timeout_seconds=float(data.get("receive_timeout_seconds", 1.0)),
    )


def parse_side_channel(data: dict[str, Any]) -> SideChannelSettings:
    return SideChannelSettings(
        max_workers=_positive("side_channel", "max_workers", int(data.get("max_workers", 4))),
    )


def parse_permissions(data: dict[str, Any]) -> PermissionSettings:
    roles = tuple(
        (str(role), frozenset(str(k) for k in (keys or ())))
        for role, keys in sorted(data.items())
    )
    return PermissionSettings(roles=roles)


_PARSERS = {
    "database": parse_database,
    "rental": parse_rental,
    "payment": parse_payment,
    "repository": parse_repository,
    "queue": parse_queue,
    "side_channel": parse_side_channel,
    "permissions": parse_permissions,
}


def parse_settings(data: dict[str, Any]) -> KioskSettings:
    """Parse a merged settings document into ``KioskSettings``."""
    unknown = set(data) - set(_PARSERS)
    if unknown:
        raise ValueError(f"Unknown settings sections: {sorted(unknown)}")
    sections = {name: parser(data.get(name) or {}) for name, parser in _PARSERS.items()}
    return KioskSettings(checksum=compute_checksum(data), **sections)


def load_settings(config_path: Path | str | None = None) -> KioskSettings:
    """
    Load defaults, merge the override file, and parse.

    The override is ``config_path`` when given, else the file named by the
    ``KIOSK_CONFIG`` environment variable, else none.
    """
    data = load_yaml_file(DEFAULTS_PATH)
    override_path = config_path or os.environ.get(ENV_VAR)
    if override_path:
        data = deep_merge(data, load_yaml_file(Path(override_path)))
    return parse_settings(data)

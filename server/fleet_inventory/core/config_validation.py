"""Configuration validation utilities."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .config import (
    settings,
    set_config_validation_result,
    get_config_validation_result,
)

_VALID_WINRM_TRANSPORTS = {"negotiate", "ntlm", "kerberos", "basic", "credssp"}


@dataclass
class ConfigIssue:
    """Represents a single configuration issue."""

    message: str
    hint: Optional[str] = None


@dataclass
class ConfigValidationResult:
    """Outcome of running configuration checks."""

    checked_at: datetime
    errors: List[ConfigIssue] = field(default_factory=list)
    warnings: List[ConfigIssue] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


def _warn(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.warnings.append(ConfigIssue(message=message, hint=hint))


def _error(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.errors.append(ConfigIssue(message=message, hint=hint))


def run_config_checks(force: bool = False) -> ConfigValidationResult:
    """Validate configuration combinations and cache the result."""

    if not force:
        cached = get_config_validation_result()
        if cached is not None:
            return cached

    result = ConfigValidationResult(checked_at=datetime.now(timezone.utc))

    if settings.collector_max_concurrency < 1:
        _error(
            result,
            "COLLECTOR_MAX_CONCURRENCY must be at least 1.",
            "Set COLLECTOR_MAX_CONCURRENCY to the number of hosts queried in parallel.",
        )

    if settings.collector_task_timeout <= 0:
        _error(
            result,
            "COLLECTOR_TASK_TIMEOUT must be greater than zero.",
            "Set COLLECTOR_TASK_TIMEOUT to the per-device deadline in seconds.",
        )

    # Telemetry runs under its own deadline, independent of COLLECTOR_TASK_TIMEOUT.
    if settings.telemetry_timeout <= 0:
        _error(
            result,
            "TELEMETRY_TIMEOUT must be greater than zero.",
            "Set TELEMETRY_TIMEOUT to the per-host telemetry deadline in seconds.",
        )

    if settings.snapshot_file:
        # Snapshot mode replaces every live source; WinRM settings are unused.
        if not Path(settings.snapshot_file).is_file():
            _error(
                result,
                f"SNAPSHOT_FILE {settings.snapshot_file} does not exist.",
                "Point SNAPSHOT_FILE at a YAML or JSON inventory snapshot.",
            )
        set_config_validation_result(result)
        return result

    # The primary source is mandatory; everything else degrades gracefully.
    if not settings.get_pvs_servers_list():
        _error(
            result,
            "No PVS servers configured (PVS_SERVERS).",
            "Set PVS_SERVERS to a comma-separated list; the first server found wins per device.",
        )

    if not settings.get_broker_controllers_list():
        _warn(
            result,
            "No Delivery Controllers configured (BROKER_CONTROLLERS).",
            "Without controllers no orchestration data is merged and no orphans are detected.",
        )

    if not settings.get_vcenter_servers_list():
        _warn(
            result,
            "No vCenter servers configured (VCENTER_SERVERS).",
            "Set VCENTER_SERVERS to merge virtual hardware details.",
        )

    if not settings.winrm_host:
        _error(
            result,
            "WINRM_HOST is not configured.",
            "Set WINRM_HOST to the management server with the Citrix and VMware snap-ins.",
        )

    transport = (settings.winrm_transport or "").strip().lower()
    if transport not in _VALID_WINRM_TRANSPORTS:
        _error(
            result,
            f"WINRM_TRANSPORT '{settings.winrm_transport}' is not supported.",
            "Use one of: " + ", ".join(sorted(_VALID_WINRM_TRANSPORTS)) + ".",
        )
    elif transport != "kerberos" and not settings.has_winrm_credentials():
        _warn(
            result,
            "WinRM credentials are not configured.",
            "Provide WINRM_USERNAME and WINRM_PASSWORD or switch WINRM_TRANSPORT to kerberos.",
        )

    if not settings.get_orphan_provisioning_types() and not (
        settings.orphan_always_include or settings.orphan_include_unclassified
    ):
        _warn(
            result,
            "Orphan filter excludes every device.",
            "Set ORPHAN_PROVISIONING_TYPES or enable ORPHAN_ALWAYS_INCLUDE.",
        )

    set_config_validation_result(result)
    return result

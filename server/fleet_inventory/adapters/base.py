"""
Inventory source interfaces.

Every management plane is reached through a narrow adapter so the engine
stays independent of the vendor tooling and is easy to mock in tests.

All adapter methods are blocking; the run service executes per-device calls
through the bounded collector and listing calls off the event loop.
"""

from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from ..core.models import (
    DeviceIdentity,
    DirectoryGroup,
    OrchestrationGroup,
    PartialRecord,
    TelemetryGroup,
    VirtualizationGroup,
)


class SourceUnavailableError(RuntimeError):
    """Raised when an entire inventory source cannot be reached."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.detail = message


class DeviceNotFoundError(LookupError):
    """Raised when a source has no record for the requested device."""

    def __init__(self, source: str, identity: str):
        super().__init__(f"{identity} not found in {source}")
        self.source = source
        self.identity = identity


class InventorySourceAdapter(Protocol):
    """Source that can list devices and describe each of them."""

    name: str

    def list_devices(self, name_filter: Optional[str] = None) -> List[DeviceIdentity]:
        """Return the identities known to the source."""

    def get_device_detail(self, identity: DeviceIdentity) -> PartialRecord:
        """Return the source's groups for one device."""


class TelemetryAdapter(Protocol):
    """Live per-host data fetched from the device itself."""

    name: str

    def get_telemetry(self, hostname: str, timeout: float) -> TelemetryGroup:
        """Return telemetry, or a group carrying a timed-out/unreachable marker."""


class DirectoryAdapter(Protocol):
    """Directory service lookups by short name."""

    name: str

    def lookup(self, short_name: str) -> DirectoryGroup:
        """Return the computer object or raise ``DeviceNotFoundError``."""


class VirtualizationAdapter(Protocol):
    """Hypervisor manager listing virtual machines."""

    name: str

    def list_vms(self, name_pattern: str = "*") -> List[Tuple[str, VirtualizationGroup]]:
        """Return ``(display name, group)`` pairs."""


class BrokerAdapter(Protocol):
    """Orchestration broker (Delivery Controller) listings."""

    name: str

    def list_machines(
        self, admin_address: str
    ) -> List[Tuple[DeviceIdentity, OrchestrationGroup, Optional[str]]]:
        """Return ``(identity, group, catalog reference)`` for every machine."""

    def list_catalogs(self, admin_address: str) -> List[Tuple[str, Optional[str]]]:
        """Return ``(catalog reference, provisioning type)`` pairs."""


__all__ = [
    "BrokerAdapter",
    "DeviceNotFoundError",
    "DirectoryAdapter",
    "InventorySourceAdapter",
    "SourceUnavailableError",
    "TelemetryAdapter",
    "VirtualizationAdapter",
]

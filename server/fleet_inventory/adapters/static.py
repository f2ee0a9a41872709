"""
Snapshot-backed adapters.

Reads a YAML or JSON document describing every source, which is useful for
offline runs, demos and tests.

Schema example

provisioning:
  - server: pvs01
    devices:
      - name: CORP\\VDI001
        disk_name: Store1\\Win10
        store_name: Store1
        write_cache_type: cacheInDeviceRam
orchestration:
  - controller: ddc01
    catalogs:
      - {name: Win10-PVS, provisioning_type: PVS}
    machines:
      - {name: CORP\\VDI001, catalog: Win10-PVS, delivery_group: Desktops}
virtualization:
  - server: vc01
    vms:
      - {name: VDI001_clone, num_cpu: 2, memory_mb: 4096}
directory:
  computers:
    - {name: VDI001, description: Pooled desktop}
telemetry:
  VDI001: {boot_time: "2024-01-01T06:00:00Z", cpu_percent: 12.5}
  VDI002: {status: timed_out}
"""

from __future__ import annotations

import fnmatch
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..core.identity import normalize_identity
from ..core.models import (
    DeviceIdentity,
    DirectoryGroup,
    OrchestrationGroup,
    PartialRecord,
    ProvisioningGroup,
    TelemetryGroup,
    TelemetryStatus,
    VirtualizationGroup,
)
from .base import DeviceNotFoundError, SourceUnavailableError

logger = logging.getLogger(__name__)


def _fields(obj: Dict[str, Any], model: type) -> Dict[str, Any]:
    return {key: value for key, value in obj.items() if key in model.model_fields}


@dataclass
class StaticProvisioningAdapter:
    """One provisioning server's devices from a snapshot."""

    name: str
    devices: List[Dict[str, Any]] = field(default_factory=list)
    unavailable: bool = False

    def list_devices(self, name_filter: Optional[str] = None) -> List[DeviceIdentity]:
        if self.unavailable:
            raise SourceUnavailableError(self.name, "marked unavailable in snapshot")
        pattern = (name_filter or "*").upper()
        identities: List[DeviceIdentity] = []
        for obj in self.devices:
            raw_name = str(obj.get("name", ""))
            identity = normalize_identity(raw_name, obj.get("domain"))
            if fnmatch.fnmatchcase(identity.short_name, pattern):
                identities.append(identity)
        return identities

    def get_device_detail(self, identity: DeviceIdentity) -> PartialRecord:
        for obj in self.devices:
            candidate = normalize_identity(str(obj.get("name", "")), obj.get("domain"))
            if candidate.matches(identity):
                delay = float(obj.get("delay_seconds", 0) or 0)
                if delay:
                    time.sleep(delay)
                return PartialRecord(
                    name=str(obj.get("name")),
                    provisioning=ProvisioningGroup.model_validate(_fields(obj, ProvisioningGroup)),
                )
        raise DeviceNotFoundError(self.name, identity.canonical)


@dataclass
class StaticBrokerAdapter:
    """Broker machines and catalogs keyed by controller address."""

    name: str = "broker"
    controllers: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def _controller(self, admin_address: str) -> Dict[str, Any]:
        controller = self.controllers.get(admin_address)
        if controller is None or controller.get("unavailable"):
            raise SourceUnavailableError(f"broker:{admin_address}", "controller not reachable")
        return controller

    def list_machines(
        self, admin_address: str
    ) -> List[Tuple[DeviceIdentity, OrchestrationGroup, Optional[str]]]:
        machines = []
        for obj in self._controller(admin_address).get("machines", []) or []:
            if not isinstance(obj, dict):
                continue
            values = _fields(obj, OrchestrationGroup)
            values["controller"] = admin_address
            group = OrchestrationGroup.model_validate(values)
            machines.append((normalize_identity(str(obj.get("name", ""))), group, group.catalog))
        return machines

    def list_catalogs(self, admin_address: str) -> List[Tuple[str, Optional[str]]]:
        return [
            (str(obj["name"]), obj.get("provisioning_type"))
            for obj in self._controller(admin_address).get("catalogs", []) or []
            if isinstance(obj, dict) and obj.get("name")
        ]


@dataclass
class StaticVirtualizationAdapter:
    """VMs of one hypervisor manager from a snapshot."""

    name: str
    vms: List[Dict[str, Any]] = field(default_factory=list)
    unavailable: bool = False

    def list_vms(self, name_pattern: str = "*") -> List[Tuple[str, VirtualizationGroup]]:
        if self.unavailable:
            raise SourceUnavailableError(self.name, "marked unavailable in snapshot")
        result = []
        for obj in self.vms:
            vm_name = str(obj.get("name", ""))
            if not fnmatch.fnmatch(vm_name.upper(), (name_pattern or "*").upper()):
                continue
            values = _fields(obj, VirtualizationGroup)
            values["vm_name"] = values.get("vm_name") or vm_name
            group = VirtualizationGroup.model_validate(values)
            result.append((vm_name, group))
        return result


@dataclass
class StaticDirectoryAdapter:
    """Directory computer objects keyed by short name."""

    name: str = "directory"
    computers: List[Dict[str, Any]] = field(default_factory=list)

    def lookup(self, short_name: str) -> DirectoryGroup:
        wanted = short_name.upper()
        for obj in self.computers:
            if normalize_identity(str(obj.get("name", ""))).short_name == wanted:
                return DirectoryGroup.model_validate(_fields(obj, DirectoryGroup))
        raise DeviceNotFoundError(self.name, short_name)


@dataclass
class StaticTelemetryAdapter:
    """Canned telemetry; ``delay_seconds`` simulates a slow host."""

    name: str = "telemetry"
    hosts: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def get_telemetry(self, hostname: str, timeout: float) -> TelemetryGroup:
        obj = None
        wanted = normalize_identity(hostname).short_name
        for key, value in self.hosts.items():
            if normalize_identity(key).short_name == wanted:
                obj = value or {}
                break
        if obj is None:
            return TelemetryGroup.marker(TelemetryStatus.UNREACHABLE, f"{hostname} not in snapshot")

        delay = float(obj.get("delay_seconds", 0) or 0)
        if delay:
            time.sleep(delay)
        return TelemetryGroup.model_validate(_fields(obj, TelemetryGroup))


@dataclass
class SnapshotAdapters:
    """Every adapter described by one snapshot document."""

    provisioning: List[StaticProvisioningAdapter] = field(default_factory=list)
    broker: Optional[StaticBrokerAdapter] = None
    controllers: List[str] = field(default_factory=list)
    virtualization: List[StaticVirtualizationAdapter] = field(default_factory=list)
    directory: Optional[StaticDirectoryAdapter] = None
    telemetry: Optional[StaticTelemetryAdapter] = None


def parse_snapshot(data: Dict[str, Any]) -> SnapshotAdapters:
    """Build adapters from an already-parsed snapshot document."""

    adapters = SnapshotAdapters()

    for obj in data.get("provisioning", []) or []:
        if isinstance(obj, dict):
            adapters.provisioning.append(
                StaticProvisioningAdapter(
                    name=f"pvs:{obj.get('server', 'static')}",
                    devices=[d for d in obj.get("devices", []) or [] if isinstance(d, dict)],
                    unavailable=bool(obj.get("unavailable", False)),
                )
            )

    controllers: Dict[str, Dict[str, Any]] = {}
    for obj in data.get("orchestration", []) or []:
        if isinstance(obj, dict) and obj.get("controller"):
            controllers[str(obj["controller"])] = obj
            adapters.controllers.append(str(obj["controller"]))
    if controllers:
        adapters.broker = StaticBrokerAdapter(controllers=controllers)

    for obj in data.get("virtualization", []) or []:
        if isinstance(obj, dict):
            adapters.virtualization.append(
                StaticVirtualizationAdapter(
                    name=f"vcenter:{obj.get('server', 'static')}",
                    vms=[vm for vm in obj.get("vms", []) or [] if isinstance(vm, dict)],
                    unavailable=bool(obj.get("unavailable", False)),
                )
            )

    directory = data.get("directory")
    if isinstance(directory, dict):
        adapters.directory = StaticDirectoryAdapter(
            computers=[c for c in directory.get("computers", []) or [] if isinstance(c, dict)]
        )

    telemetry = data.get("telemetry")
    if isinstance(telemetry, dict):
        adapters.telemetry = StaticTelemetryAdapter(hosts=dict(telemetry))

    return adapters


def load_snapshot(path: Path) -> SnapshotAdapters:
    """Load a snapshot document from a ``.json``, ``.yaml`` or ``.yml`` file."""

    content = Path(path).read_text(encoding="utf-8")
    if str(path).lower().endswith(".json"):
        data = json.loads(content)
    else:
        data = yaml.safe_load(content)

    if not isinstance(data, dict):
        raise ValueError(f"Snapshot {path} must contain a mapping at the top level")

    adapters = parse_snapshot(data)
    logger.info(
        "Loaded snapshot %s (%d provisioning server(s), %d controller(s), %d hypervisor manager(s))",
        path,
        len(adapters.provisioning),
        len(adapters.controllers),
        len(adapters.virtualization),
    )
    return adapters


__all__ = [
    "SnapshotAdapters",
    "StaticBrokerAdapter",
    "StaticDirectoryAdapter",
    "StaticProvisioningAdapter",
    "StaticTelemetryAdapter",
    "StaticVirtualizationAdapter",
    "load_snapshot",
    "parse_snapshot",
]

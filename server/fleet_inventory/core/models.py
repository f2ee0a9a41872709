"""Data models for the fleet inventory."""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SourceKind(str, Enum):
    """Management plane an inventory source belongs to."""
    PROVISIONING = "provisioning"
    ORCHESTRATION = "orchestration"
    VIRTUALIZATION = "virtualization"
    DIRECTORY = "directory"
    TELEMETRY = "telemetry"


# Higher rank wins a field conflict.
SOURCE_PRECEDENCE: Dict[SourceKind, int] = {
    SourceKind.PROVISIONING: 50,
    SourceKind.ORCHESTRATION: 40,
    SourceKind.VIRTUALIZATION: 30,
    SourceKind.DIRECTORY: 20,
    SourceKind.TELEMETRY: 10,
}


class TelemetryStatus(str, Enum):
    """Outcome marker for a live telemetry fetch."""
    OK = "ok"
    TIMED_OUT = "timed_out"
    UNREACHABLE = "unreachable"


class FetchStatus(str, Enum):
    """Why a per-device detail fetch left its group empty."""
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    UNREACHABLE = "unreachable"


class WarningKind(str, Enum):
    """Non-fatal conditions surfaced in the run manifest."""
    DUPLICATE_IDENTITY = "duplicate_identity"
    MERGE_CONFLICT = "merge_conflict"
    SOURCE_UNAVAILABLE = "source_unavailable"


@dataclass(frozen=True)
class DeviceIdentity:
    """Canonical device key.

    Instances compare structurally so they can be used as dictionary keys.
    ``matches`` implements the correlation rule used when merging sources:
    short names must match, and domains only have to agree when both sides
    carry one.
    """

    short_name: str
    domain: Optional[str] = None

    @property
    def canonical(self) -> str:
        """Stable string key, ``DOMAIN\\NAME`` or ``NAME``."""
        if self.domain:
            return f"{self.domain}\\{self.short_name}"
        return self.short_name

    def matches(self, other: "DeviceIdentity") -> bool:
        if self.short_name != other.short_name:
            return False
        if self.domain is None or other.domain is None:
            return True
        return self.domain == other.domain

    def conflicts_with(self, other: "DeviceIdentity") -> bool:
        """True when the short names agree but the domains disagree."""
        return (
            self.short_name == other.short_name
            and self.domain is not None
            and other.domain is not None
            and self.domain != other.domain
        )

    def __str__(self) -> str:
        return self.canonical


class ProvisioningGroup(BaseModel):
    """Citrix Provisioning Services target device details."""
    model_config = ConfigDict(frozen=True)

    device_name: Optional[str] = None
    disk_name: Optional[str] = None
    store_name: Optional[str] = None
    store_path: Optional[str] = None
    disk_version: Optional[int] = None
    disk_versions: List[str] = Field(default_factory=list)
    retries: Optional[int] = None
    write_cache_type: Optional[str] = None
    site: Optional[str] = None
    collection: Optional[str] = None
    server: Optional[str] = None
    active: Optional[bool] = None
    mac_address: Optional[str] = None


class OrchestrationGroup(BaseModel):
    """Citrix Broker machine details."""
    model_config = ConfigDict(frozen=True)

    catalog: Optional[str] = None
    delivery_group: Optional[str] = None
    registration_state: Optional[str] = None
    in_maintenance_mode: Optional[bool] = None
    session_count: Optional[int] = None
    load_index: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    power_state: Optional[str] = None
    controller: Optional[str] = None
    provisioning_type: Optional[str] = None


class DirectoryGroup(BaseModel):
    """Active Directory computer object details."""
    model_config = ConfigDict(frozen=True)

    created: Optional[datetime] = None
    last_logon: Optional[datetime] = None
    description: Optional[str] = None
    member_of: List[str] = Field(default_factory=list)
    distinguished_name: Optional[str] = None
    enabled: Optional[bool] = None


class VirtualizationGroup(BaseModel):
    """Hypervisor view of the virtual machine."""
    model_config = ConfigDict(frozen=True)

    vm_name: Optional[str] = None
    num_cpu: Optional[int] = None
    memory_mb: Optional[int] = None
    disks_gb: List[float] = Field(default_factory=list)
    nics: List[str] = Field(default_factory=list)
    host: Optional[str] = None
    power_state: Optional[str] = None
    guest_os: Optional[str] = None


class TelemetryGroup(BaseModel):
    """Live data fetched from the device itself."""
    model_config = ConfigDict(frozen=True)

    status: TelemetryStatus = TelemetryStatus.OK
    boot_time: Optional[datetime] = None
    uptime_hours: Optional[float] = None
    free_memory_percent: Optional[float] = None
    cpu_percent: Optional[float] = None
    free_disk_percent: Optional[float] = None
    domain_trust: Optional[bool] = None
    error: Optional[str] = None

    @classmethod
    def marker(cls, status: TelemetryStatus, error: Optional[str] = None) -> "TelemetryGroup":
        """Build a value-less telemetry group carrying only a failure marker."""
        return cls(status=status, error=error)


GROUP_NAMES = ("provisioning", "orchestration", "virtualization", "directory", "telemetry")


class PartialRecord(BaseModel):
    """Groups contributed by a single source for one device."""
    name: Optional[str] = None  # Raw name as reported by the source
    provisioning: Optional[ProvisioningGroup] = None
    orchestration: Optional[OrchestrationGroup] = None
    virtualization: Optional[VirtualizationGroup] = None
    directory: Optional[DirectoryGroup] = None
    telemetry: Optional[TelemetryGroup] = None
    # Group name to the reason its per-device fetch produced nothing
    fetch_errors: Dict[str, FetchStatus] = Field(default_factory=dict)

    def provisioning_type(self) -> Optional[str]:
        """Classifying field used by orphan predicates."""
        if self.orchestration is None:
            return None
        return self.orchestration.provisioning_type


class DeviceRecord(BaseModel):
    """Unified view of one device across every source.

    Records are frozen once reconciliation finishes. ``fetch_errors`` names
    the groups whose per-device fetch timed out or failed, so an absent group
    can be told apart from one no source reported.
    """
    model_config = ConfigDict(frozen=True)

    short_name: str
    domain: Optional[str] = None
    name: Optional[str] = None
    provisioning: Optional[ProvisioningGroup] = None
    orchestration: Optional[OrchestrationGroup] = None
    virtualization: Optional[VirtualizationGroup] = None
    directory: Optional[DirectoryGroup] = None
    telemetry: Optional[TelemetryGroup] = None
    orphan: bool = False
    provenance: Optional[str] = None
    sources: List[str] = Field(default_factory=list)
    fetch_errors: Dict[str, FetchStatus] = Field(default_factory=dict)

    @property
    def identity(self) -> DeviceIdentity:
        return DeviceIdentity(short_name=self.short_name, domain=self.domain)


class ReconcileWarning(BaseModel):
    """A non-fatal condition raised while building the snapshot."""
    model_config = ConfigDict(frozen=True)

    kind: WarningKind
    message: str
    source: Optional[str] = None
    identity: Optional[str] = None


class RunManifest(BaseModel):
    """Counts describing how complete a snapshot is."""
    model_config = ConfigDict(frozen=True)

    primary_source: str
    total_records: int = 0
    per_source_orphan_counts: Dict[str, int] = Field(default_factory=dict)
    timed_out_count: int = 0
    failed_count: int = 0
    unreachable_count: int = 0
    unavailable_sources: List[str] = Field(default_factory=list)
    warnings: List[ReconcileWarning] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class ResultAggregate(BaseModel):
    """Read-only snapshot handed to the reporting layer.

    The aggregate, its manifest and every record are frozen models. The
    ``records`` mapping itself is a plain dict and is not copied on access.
    """
    model_config = ConfigDict(frozen=True)

    records: Dict[str, DeviceRecord] = Field(default_factory=dict)
    manifest: RunManifest

    def get(self, identity: DeviceIdentity) -> Optional[DeviceRecord]:
        return self.records.get(identity.canonical)

    def orphans(self) -> List[DeviceRecord]:
        return [record for record in self.records.values() if record.orphan]

    def to_rows(self) -> List[Dict[str, Any]]:
        """Flatten records into dictionaries suitable for CSV/grid renderers."""

        rows: List[Dict[str, Any]] = []
        for key, record in self.records.items():
            row: Dict[str, Any] = {
                "device": key,
                "orphan": record.orphan,
                "provenance": record.provenance,
                "sources": ",".join(record.sources),
                "fetch_errors": ";".join(
                    f"{failed}={status.value}" for failed, status in sorted(record.fetch_errors.items())
                ),
            }
            for group_name in GROUP_NAMES:
                group = getattr(record, group_name)
                if group is None:
                    continue
                for field_name, value in group.model_dump(mode="json").items():
                    if isinstance(value, list):
                        value = ";".join(str(item) for item in value)
                    row[f"{group_name}.{field_name}"] = value
            rows.append(row)
        return rows

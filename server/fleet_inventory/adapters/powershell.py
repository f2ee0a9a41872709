"""Inventory adapters that run the vendor PowerShell tooling over WinRM.

Each adapter issues a short script, pipes the result through ConvertTo-Json
and maps the properties into the typed groups. Listing failures surface as
``SourceUnavailableError``; per-device failures propagate to the collector.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

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
from ..services.winrm_service import (
    WinRMCommandError,
    WinRMService,
    WinRMServiceError,
    WinRMTransportError,
    winrm_service,
)
from .base import DeviceNotFoundError, SourceUnavailableError
from .parsing import (
    coerce_bool,
    coerce_datetime,
    coerce_float,
    coerce_float_list,
    coerce_int,
    coerce_str,
    coerce_str_list,
)

logger = logging.getLogger(__name__)

_quote = WinRMService.ps_quote

PVS_MODULE = "Import-Module 'C:\\Program Files\\Citrix\\Provisioning Services Console\\Citrix.PVS.SnapIn.dll'"
BROKER_SNAPIN = "Add-PSSnapin Citrix.Broker.Admin.V2 -ErrorAction SilentlyContinue"
POWERCLI_MODULE = "Import-Module VMware.VimAutomation.Core"

_NOT_FOUND_TOKENS = ("cannot find an object", "not found", "does not exist")


def _rows(payload: List[Any]) -> List[Dict[str, Any]]:
    return [row for row in payload if isinstance(row, dict)]


def _is_not_found(exc: WinRMCommandError) -> bool:
    lowered = str(exc).lower()
    return any(token in lowered for token in _NOT_FOUND_TOKENS)


class PvsPowerShellAdapter:
    """Citrix Provisioning Services farm member reached through its PowerShell SDK."""

    def __init__(
        self,
        server: str,
        *,
        winrm: Optional[WinRMService] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.server = server
        self.name = f"pvs:{server}"
        self._winrm = winrm or winrm_service
        self._timeout = timeout
        self._device_names: Dict[DeviceIdentity, str] = {}
        self._disk_versions: Dict[str, List[Dict[str, Any]]] = {}
        self._store_paths: Dict[str, str] = {}
        self._prepared = False

    def _run(self, script: str) -> List[Dict[str, Any]]:
        command = f"{PVS_MODULE}\nSet-PvsConnection -Server {_quote(self.server)} | Out-Null\n{script}"
        return _rows(self._winrm.execute_ps_json(self.server, command, timeout=self._timeout))

    def list_devices(self, name_filter: Optional[str] = None) -> List[DeviceIdentity]:
        pattern = name_filter or "*"
        script = (
            "Get-PvsDeviceInfo | Where-Object { $_.DeviceName -like "
            f"{_quote(pattern)} }} | Select-Object DeviceName, DomainName"
        )
        try:
            rows = self._run(script)
        except WinRMServiceError as exc:
            raise SourceUnavailableError(self.name, str(exc)) from exc

        identities: List[DeviceIdentity] = []
        for row in rows:
            raw_name = coerce_str(row.get("DeviceName"))
            if not raw_name:
                continue
            identity = normalize_identity(raw_name, coerce_str(row.get("DomainName")))
            self._device_names.setdefault(identity, raw_name)
            identities.append(identity)

        logger.info("PVS server %s reported %d device(s)", self.server, len(identities))
        return identities

    def prepare(self) -> None:
        """Build the disk version and store path tables once before fan-out."""

        if self._prepared:
            return
        try:
            versions = self._run(
                "Get-PvsDiskInfo | ForEach-Object { $disk = $_; "
                "Get-PvsDiskVersion -DiskLocatorId $disk.DiskLocatorId | "
                "Select-Object @{n='DiskLocatorName';e={$disk.Name}}, Version, Access, Description }"
            )
            stores = self._run("Get-PvsStore | Select-Object StoreName, Path")
        except WinRMServiceError as exc:
            logger.warning("Unable to build PVS disk caches from %s: %s", self.server, exc)
            versions, stores = [], []

        for row in versions:
            disk = coerce_str(row.get("DiskLocatorName"))
            if disk:
                self._disk_versions.setdefault(disk.upper(), []).append(row)
        for row in stores:
            store = coerce_str(row.get("StoreName"))
            if store:
                self._store_paths[store.upper()] = coerce_str(row.get("Path")) or ""
        self._prepared = True

    def get_device_detail(self, identity: DeviceIdentity) -> PartialRecord:
        raw_name = self._device_names.get(identity, identity.short_name)
        script = (
            f"Get-PvsDeviceInfo -Name {_quote(raw_name)} | Select-Object DeviceName, DeviceMac, "
            "SiteName, CollectionName, DiskLocatorName, DiskVersion, ServerName, Active, "
            "Status, LocalWriteCacheType, @{n='StoreName';e={($_.DiskLocatorName -split '\\\\')[0]}}"
        )
        try:
            rows = self._run(script)
        except WinRMCommandError as exc:
            if _is_not_found(exc):
                raise DeviceNotFoundError(self.name, identity.canonical) from exc
            raise
        if not rows:
            raise DeviceNotFoundError(self.name, identity.canonical)

        row = rows[0]
        disk_name = coerce_str(row.get("DiskLocatorName"))
        store_name = coerce_str(row.get("StoreName"))
        versions = self._disk_versions.get((disk_name or "").split("\\")[-1].upper(), [])

        return PartialRecord(
            name=raw_name,
            provisioning=ProvisioningGroup(
                device_name=coerce_str(row.get("DeviceName")),
                disk_name=disk_name,
                store_name=store_name,
                store_path=self._store_paths.get((store_name or "").upper()),
                disk_version=coerce_int(row.get("DiskVersion")),
                disk_versions=[
                    f"{coerce_int(version.get('Version'))}:{coerce_str(version.get('Access')) or ''}"
                    for version in versions
                ],
                retries=coerce_int(row.get("Status")),
                write_cache_type=coerce_str(row.get("LocalWriteCacheType")),
                site=coerce_str(row.get("SiteName")),
                collection=coerce_str(row.get("CollectionName")),
                server=coerce_str(row.get("ServerName")),
                active=coerce_bool(row.get("Active")),
                mac_address=coerce_str(row.get("DeviceMac")),
            ),
        )


class BrokerPowerShellAdapter:
    """Citrix Broker SDK queried from a management host."""

    def __init__(
        self,
        management_host: str,
        *,
        winrm: Optional[WinRMService] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.management_host = management_host
        self.name = "broker"
        self._winrm = winrm or winrm_service
        self._timeout = timeout

    def _run(self, admin_address: str, script: str) -> List[Dict[str, Any]]:
        command = f"{BROKER_SNAPIN}\n{script}"
        try:
            payload = self._winrm.execute_ps_json(
                self.management_host, command, timeout=self._timeout
            )
        except WinRMServiceError as exc:
            raise SourceUnavailableError(f"broker:{admin_address}", str(exc)) from exc
        return _rows(payload)

    def list_machines(
        self, admin_address: str
    ) -> List[Tuple[DeviceIdentity, OrchestrationGroup, Optional[str]]]:
        rows = self._run(
            admin_address,
            f"Get-BrokerMachine -AdminAddress {_quote(admin_address)} -MaxRecordCount 100000 | "
            "Select-Object MachineName, CatalogName, DesktopGroupName, RegistrationState, "
            "InMaintenanceMode, SessionCount, LoadIndex, Tags, PowerState",
        )

        machines: List[Tuple[DeviceIdentity, OrchestrationGroup, Optional[str]]] = []
        for row in rows:
            raw_name = coerce_str(row.get("MachineName"))
            if not raw_name:
                continue
            catalog = coerce_str(row.get("CatalogName"))
            group = OrchestrationGroup(
                catalog=catalog,
                delivery_group=coerce_str(row.get("DesktopGroupName")),
                registration_state=coerce_str(row.get("RegistrationState")),
                in_maintenance_mode=coerce_bool(row.get("InMaintenanceMode")),
                session_count=coerce_int(row.get("SessionCount")),
                load_index=coerce_int(row.get("LoadIndex")),
                tags=coerce_str_list(row.get("Tags")),
                power_state=coerce_str(row.get("PowerState")),
                controller=admin_address,
            )
            machines.append((normalize_identity(raw_name), group, catalog))

        logger.info("Controller %s reported %d machine(s)", admin_address, len(machines))
        return machines

    def list_catalogs(self, admin_address: str) -> List[Tuple[str, Optional[str]]]:
        rows = self._run(
            admin_address,
            f"Get-BrokerCatalog -AdminAddress {_quote(admin_address)} | "
            "Select-Object Name, ProvisioningType",
        )
        catalogs: List[Tuple[str, Optional[str]]] = []
        for row in rows:
            name = coerce_str(row.get("Name"))
            if name:
                catalogs.append((name, coerce_str(row.get("ProvisioningType"))))
        return catalogs


class ActiveDirectoryAdapter:
    """ActiveDirectory module lookups run on a management host."""

    def __init__(
        self,
        management_host: str,
        *,
        server: Optional[str] = None,
        search_base: Optional[str] = None,
        winrm: Optional[WinRMService] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.management_host = management_host
        self.server = server
        self.search_base = search_base
        self.name = f"ad:{server}" if server else "ad"
        self._winrm = winrm or winrm_service
        self._timeout = timeout

    def lookup(self, short_name: str) -> DirectoryGroup:
        arguments = [f"-Filter \"Name -eq '{short_name.replace(chr(39), '')}'\""]
        if self.server:
            arguments.append(f"-Server {_quote(self.server)}")
        if self.search_base:
            arguments.append(f"-SearchBase {_quote(self.search_base)}")
        command = (
            "Import-Module ActiveDirectory\n"
            f"Get-ADComputer {' '.join(arguments)} "
            "-Properties whenCreated, LastLogonDate, Description, MemberOf, Enabled, DistinguishedName | "
            "Select-Object @{n='Created';e={$_.whenCreated.ToUniversalTime().ToString('o')}}, "
            "@{n='LastLogon';e={if ($_.LastLogonDate) { $_.LastLogonDate.ToUniversalTime().ToString('o') }}}, "
            "Description, MemberOf, Enabled, DistinguishedName"
        )
        rows = _rows(
            self._winrm.execute_ps_json(self.management_host, command, timeout=self._timeout)
        )
        if not rows:
            raise DeviceNotFoundError(self.name, short_name)

        row = rows[0]
        return DirectoryGroup(
            created=coerce_datetime(row.get("Created")),
            last_logon=coerce_datetime(row.get("LastLogon")),
            description=coerce_str(row.get("Description")),
            member_of=coerce_str_list(row.get("MemberOf"), separator=None),
            distinguished_name=coerce_str(row.get("DistinguishedName")),
            enabled=coerce_bool(row.get("Enabled")),
        )


class PowerCLIAdapter:
    """VMware vCenter listing through PowerCLI."""

    def __init__(
        self,
        vcenter: str,
        management_host: str,
        *,
        winrm: Optional[WinRMService] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.vcenter = vcenter
        self.management_host = management_host
        self.name = f"vcenter:{vcenter}"
        self._winrm = winrm or winrm_service
        self._timeout = timeout

    def list_vms(self, name_pattern: str = "*") -> List[Tuple[str, VirtualizationGroup]]:
        command = (
            f"{POWERCLI_MODULE}\n"
            f"Connect-VIServer -Server {_quote(self.vcenter)} | Out-Null\n"
            f"Get-VM -Name {_quote(name_pattern or '*')} | ForEach-Object {{ [pscustomobject]@{{ "
            "Name = $_.Name; NumCpu = $_.NumCpu; MemoryMB = $_.MemoryMB; "
            "PowerState = [string]$_.PowerState; VMHost = [string]$_.VMHost.Name; "
            "GuestOS = $_.Guest.OSFullName; "
            "Disks = @(Get-HardDisk -VM $_ | ForEach-Object { $_.CapacityGB }); "
            "Nics = @(Get-NetworkAdapter -VM $_ | ForEach-Object { $_.NetworkName }) } }"
        )
        try:
            rows = _rows(
                self._winrm.execute_ps_json(self.management_host, command, timeout=self._timeout)
            )
        except WinRMServiceError as exc:
            raise SourceUnavailableError(self.name, str(exc)) from exc

        vms: List[Tuple[str, VirtualizationGroup]] = []
        for row in rows:
            vm_name = coerce_str(row.get("Name"))
            if not vm_name:
                continue
            vms.append(
                (
                    vm_name,
                    VirtualizationGroup(
                        vm_name=vm_name,
                        num_cpu=coerce_int(row.get("NumCpu")),
                        memory_mb=coerce_int(coerce_float(row.get("MemoryMB"))),
                        disks_gb=coerce_float_list(row.get("Disks")),
                        nics=coerce_str_list(row.get("Nics"), separator=None),
                        host=coerce_str(row.get("VMHost")),
                        power_state=coerce_str(row.get("PowerState")),
                        guest_os=coerce_str(row.get("GuestOS")),
                    ),
                )
            )

        logger.info("vCenter %s reported %d VM(s)", self.vcenter, len(vms))
        return vms


TELEMETRY_SCRIPT = """
$os = Get-CimInstance -ClassName Win32_OperatingSystem
$cpu = (Get-CimInstance -ClassName Win32_Processor | Measure-Object -Property LoadPercentage -Average).Average
$disk = Get-CimInstance -ClassName Win32_LogicalDisk -Filter "DeviceID='$($env:SystemDrive)'"
$trust = $null
try { $trust = Test-ComputerSecureChannel } catch { $trust = $false }
[pscustomobject]@{
    BootTime = $os.LastBootUpTime.ToUniversalTime().ToString('o')
    FreeMemoryPercent = [math]::Round(100 * $os.FreePhysicalMemory / $os.TotalVisibleMemorySize, 1)
    CpuPercent = $cpu
    FreeDiskPercent = if ($disk.Size) { [math]::Round(100 * $disk.FreeSpace / $disk.Size, 1) } else { $null }
    DomainTrust = $trust
}
""".strip()


class WinRMTelemetryAdapter:
    """Live CIM queries executed on the device itself."""

    name = "telemetry"

    def __init__(self, *, winrm: Optional[WinRMService] = None) -> None:
        self._winrm = winrm or winrm_service

    def get_telemetry(self, hostname: str, timeout: float) -> TelemetryGroup:
        try:
            rows = _rows(self._winrm.execute_ps_json(hostname, TELEMETRY_SCRIPT, timeout=timeout))
        except WinRMTransportError as exc:
            status = (
                TelemetryStatus.TIMED_OUT
                if "timed out" in str(exc).lower() or "timeout" in str(exc).lower()
                else TelemetryStatus.UNREACHABLE
            )
            logger.info("Telemetry for %s unavailable (%s): %s", hostname, status.value, exc)
            return TelemetryGroup.marker(status, str(exc))
        except WinRMServiceError as exc:
            logger.info("Telemetry for %s failed: %s", hostname, exc)
            return TelemetryGroup.marker(TelemetryStatus.UNREACHABLE, str(exc))

        if not rows:
            return TelemetryGroup.marker(TelemetryStatus.UNREACHABLE, "no telemetry returned")

        return telemetry_from_row(rows[0])


def telemetry_from_row(row: Dict[str, Any], now: Optional[datetime] = None) -> TelemetryGroup:
    """Map a telemetry payload onto a ``TelemetryGroup``."""

    boot_time = coerce_datetime(row.get("BootTime"))
    uptime_hours: Optional[float] = None
    if boot_time is not None:
        reference = now or datetime.now(timezone.utc)
        uptime_hours = round((reference - boot_time).total_seconds() / 3600.0, 2)

    return TelemetryGroup(
        status=TelemetryStatus.OK,
        boot_time=boot_time,
        uptime_hours=uptime_hours,
        free_memory_percent=coerce_float(row.get("FreeMemoryPercent")),
        cpu_percent=coerce_float(row.get("CpuPercent")),
        free_disk_percent=coerce_float(row.get("FreeDiskPercent")),
        domain_trust=coerce_bool(row.get("DomainTrust")),
    )


__all__ = [
    "ActiveDirectoryAdapter",
    "BrokerPowerShellAdapter",
    "PowerCLIAdapter",
    "PvsPowerShellAdapter",
    "WinRMTelemetryAdapter",
    "telemetry_from_row",
]

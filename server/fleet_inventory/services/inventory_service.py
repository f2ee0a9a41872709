"""One point-in-time inventory run across every configured source."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..adapters.base import (
    BrokerAdapter,
    DeviceNotFoundError,
    DirectoryAdapter,
    InventorySourceAdapter,
    SourceUnavailableError,
    TelemetryAdapter,
    VirtualizationAdapter,
)
from ..core.config import Settings, settings
from ..core.identity import normalize_identity
from ..core.models import (
    DeviceIdentity,
    FetchStatus,
    PartialRecord,
    ReconcileWarning,
    ResultAggregate,
    RunManifest,
    SourceKind,
    TelemetryGroup,
    TelemetryStatus,
    WarningKind,
)
from .collector import BoundedCollector, TaskOutcome
from .reconciler import (
    ORPHAN_ORIGIN_KINDS,
    OrphanFilter,
    Reconciler,
    SourceSnapshot,
    group_orphan_candidates,
)

logger = logging.getLogger(__name__)

PRIMARY_SOURCE_NAME = "provisioning"
BROKER_SOURCE_NAME = "broker"


class InventoryRunError(RuntimeError):
    """Raised when the primary device list cannot be obtained."""


def _fetch_status(outcome: TaskOutcome) -> Optional[FetchStatus]:
    if outcome.timed_out:
        return FetchStatus.TIMED_OUT
    if outcome.failed:
        return FetchStatus.FAILED
    return None


class _RunCounters:
    """Mutable tallies collected while the run progresses."""

    def __init__(self) -> None:
        self.timed_out = 0
        self.failed = 0
        self.unreachable = 0
        self.unavailable_sources: List[str] = []
        self.warnings: List[ReconcileWarning] = []

    def source_unavailable(self, source: str, detail: str) -> None:
        logger.warning("Inventory source %s unavailable: %s", source, detail)
        self.unavailable_sources.append(source)
        self.warnings.append(
            ReconcileWarning(
                kind=WarningKind.SOURCE_UNAVAILABLE,
                message=f"{source} unavailable: {detail}",
                source=source,
            )
        )

    def tally(self, outcome: TaskOutcome) -> None:
        if outcome.timed_out:
            self.timed_out += 1
        elif outcome.failed:
            self.failed += 1


class InventoryRunService:
    """Gather, enrich and reconcile device records from every source."""

    def __init__(
        self,
        primary: Sequence[InventorySourceAdapter],
        *,
        broker: Optional[BrokerAdapter] = None,
        controllers: Sequence[str] = (),
        virtualization: Sequence[VirtualizationAdapter] = (),
        directory: Optional[DirectoryAdapter] = None,
        telemetry: Optional[TelemetryAdapter] = None,
        orphan_filter: Optional[OrphanFilter] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self.config = config or settings
        self.primary = list(primary)
        self.broker = broker
        self.controllers = list(controllers)
        self.virtualization = list(virtualization)
        self.directory = directory
        self.telemetry = telemetry
        self.orphan_filter = orphan_filter or OrphanFilter.from_settings(self.config)

    def _collector(self, description: str, timeout: Optional[float] = None) -> BoundedCollector:
        return BoundedCollector(
            max_concurrency=self.config.collector_max_concurrency,
            per_task_timeout=timeout if timeout is not None else self.config.collector_task_timeout,
            description=description,
        )

    async def run(self) -> ResultAggregate:
        """Produce one snapshot; raises ``InventoryRunError`` if no primary list is available."""

        started_at = datetime.now(timezone.utc)
        counters = _RunCounters()
        logger.info("Starting inventory run (%d provisioning source(s))", len(self.primary))

        primary_devices = await self._list_primary(counters)
        primary_snapshot = await self._collect_primary_details(primary_devices, counters)

        # Read-only caches, built single-threaded before any further fan-out.
        secondaries: List[SourceSnapshot] = []
        orchestration = await self._collect_orchestration(counters)
        if orchestration is not None:
            secondaries.append(orchestration)
        secondaries.extend(await self._collect_virtualization(counters))

        targets = self._enrichment_targets(primary_snapshot, secondaries)
        if self.directory is not None:
            secondaries.append(await self._collect_directory(targets, counters))
        if self.telemetry is not None:
            secondaries.append(await self._collect_telemetry(targets, counters))

        reconciler = Reconciler(self.orphan_filter)
        result = reconciler.reconcile(primary_snapshot, secondaries)

        manifest = RunManifest(
            primary_source=PRIMARY_SOURCE_NAME,
            total_records=len(result.records),
            per_source_orphan_counts=dict(sorted(result.orphan_counts.items())),
            timed_out_count=counters.timed_out,
            failed_count=counters.failed,
            unreachable_count=counters.unreachable,
            unavailable_sources=counters.unavailable_sources,
            warnings=counters.warnings + result.warnings,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )

        logger.info(
            "Inventory run completed: %d record(s), orphans=%s, timed_out=%d, failed=%d, "
            "unreachable=%d, warnings=%d",
            manifest.total_records,
            manifest.per_source_orphan_counts,
            manifest.timed_out_count,
            manifest.failed_count,
            manifest.unreachable_count,
            len(manifest.warnings),
        )
        return ResultAggregate(records=result.records, manifest=manifest)

    async def _list_primary(
        self, counters: _RunCounters
    ) -> List[Tuple[DeviceIdentity, InventorySourceAdapter]]:
        """List devices from every provisioning server; the first server listing a device owns it."""

        devices: List[Tuple[DeviceIdentity, InventorySourceAdapter]] = []
        owners: Dict[str, str] = {}
        reachable = 0

        for adapter in self.primary:
            try:
                identities = await asyncio.to_thread(
                    adapter.list_devices, self.config.device_name_filter
                )
            except SourceUnavailableError as exc:
                counters.source_unavailable(adapter.name, exc.detail)
                continue
            except Exception as exc:
                logger.exception("Listing devices from %s failed", adapter.name)
                counters.source_unavailable(adapter.name, str(exc))
                continue

            reachable += 1
            for identity in identities:
                owner = owners.get(identity.canonical)
                if owner is not None and owner != adapter.name:
                    logger.debug(
                        "%s also reported by %s; keeping %s", identity, adapter.name, owner
                    )
                    continue
                owners[identity.canonical] = adapter.name
                devices.append((identity, adapter))

        if not reachable:
            raise InventoryRunError(
                "No provisioning source could be listed; nothing to reconcile against"
            )

        logger.info("Primary sources listed %d device(s)", len(devices))
        return devices

    async def _collect_primary_details(
        self,
        devices: List[Tuple[DeviceIdentity, InventorySourceAdapter]],
        counters: _RunCounters,
    ) -> SourceSnapshot:
        owners = {adapter.name: adapter for _identity, adapter in devices}
        for adapter in owners.values():
            prepare = getattr(adapter, "prepare", None)
            if callable(prepare):
                await asyncio.to_thread(prepare)

        collector = self._collector("provisioning detail")
        owner_by_key: Dict[str, InventorySourceAdapter] = {}
        for identity, adapter in devices:
            if identity.canonical in owner_by_key:
                continue
            owner_by_key[identity.canonical] = adapter
            collector.submit(identity, adapter.get_device_detail)

        outcomes = await collector.drain()

        # Duplicates are passed through so the reconciler can report them.
        entries: List[Tuple[DeviceIdentity, PartialRecord]] = []
        seen: set = set()
        for identity, _adapter in devices:
            outcome = outcomes.get(identity)
            if identity.canonical in seen or outcome is None:
                entries.append((identity, PartialRecord(name=identity.short_name)))
                continue
            seen.add(identity.canonical)
            counters.tally(outcome)
            if outcome.completed and isinstance(outcome.result, PartialRecord):
                entries.append((identity, outcome.result))
                continue
            status = _fetch_status(outcome) or FetchStatus.FAILED
            entries.append(
                (
                    identity,
                    PartialRecord(name=identity.short_name, fetch_errors={"provisioning": status}),
                )
            )

        return SourceSnapshot.from_pairs(PRIMARY_SOURCE_NAME, SourceKind.PROVISIONING, entries)

    async def _collect_orchestration(self, counters: _RunCounters) -> Optional[SourceSnapshot]:
        """Machines from every controller in configured order; the first controller wins."""

        if self.broker is None or not self.controllers:
            return None

        entries: List[Tuple[DeviceIdentity, PartialRecord]] = []
        claimed: Dict[str, str] = {}
        reachable = 0

        for controller in self.controllers:
            try:
                machines = await asyncio.to_thread(self.broker.list_machines, controller)
            except SourceUnavailableError as exc:
                counters.source_unavailable(exc.source, exc.detail)
                continue
            except Exception as exc:
                logger.exception("Listing machines from %s failed", controller)
                counters.source_unavailable(f"{BROKER_SOURCE_NAME}:{controller}", str(exc))
                continue
            reachable += 1

            try:
                catalogs = await asyncio.to_thread(self.broker.list_catalogs, controller)
            except SourceUnavailableError as exc:
                logger.warning(
                    "Catalogs unavailable from %s; machines stay unclassified: %s",
                    controller,
                    exc.detail,
                )
                catalogs = []
            except Exception as exc:
                logger.warning(
                    "Listing catalogs from %s failed; machines stay unclassified: %s", controller, exc
                )
                logger.debug("Catalog failure detail for %s", controller, exc_info=True)
                catalogs = []

            # First catalog listed under a name wins.
            provisioning_types = {name: ptype for name, ptype in reversed(catalogs)}
            for identity, group, catalog_ref in machines:
                owner = claimed.get(identity.canonical)
                if owner is not None and owner != controller:
                    logger.debug("%s already read from %s; ignoring %s", identity, owner, controller)
                    continue
                claimed[identity.canonical] = controller
                orchestration = group.model_copy(
                    update={
                        "controller": group.controller or controller,
                        "provisioning_type": group.provisioning_type
                        or provisioning_types.get(catalog_ref or ""),
                    }
                )
                entries.append(
                    (identity, PartialRecord(name=identity.canonical, orchestration=orchestration))
                )

        if not reachable:
            return None

        return SourceSnapshot.from_pairs(BROKER_SOURCE_NAME, SourceKind.ORCHESTRATION, entries)

    async def _collect_virtualization(self, counters: _RunCounters) -> List[SourceSnapshot]:
        snapshots: List[SourceSnapshot] = []
        for adapter in self.virtualization:
            try:
                vms = await asyncio.to_thread(adapter.list_vms, self.config.vm_name_pattern)
            except SourceUnavailableError as exc:
                counters.source_unavailable(adapter.name, exc.detail)
                continue
            except Exception as exc:
                logger.exception("Listing VMs from %s failed", adapter.name)
                counters.source_unavailable(adapter.name, str(exc))
                continue

            entries = [
                (
                    normalize_identity(vm_name, split_char=self.config.vm_name_split_char),
                    PartialRecord(name=vm_name, virtualization=group),
                )
                for vm_name, group in vms
            ]
            snapshots.append(
                SourceSnapshot.from_pairs(adapter.name, SourceKind.VIRTUALIZATION, entries)
            )
        return snapshots

    def _enrichment_targets(
        self,
        primary: SourceSnapshot,
        secondaries: Sequence[SourceSnapshot],
    ) -> List[DeviceIdentity]:
        """Primary devices plus orphan candidates that pass the orphan filter.

        Candidates are grouped and classified the same way the reconciler
        does, so lookups are only spent on devices that become orphans.
        """

        targets: List[DeviceIdentity] = []
        known: Dict[str, List[DeviceIdentity]] = {}

        def add(identity: DeviceIdentity) -> None:
            existing = known.setdefault(identity.short_name, [])
            if any(other.matches(identity) for other in existing):
                return
            existing.append(identity)
            targets.append(identity)

        primary_index: Dict[str, List[DeviceIdentity]] = {}
        for identity, _partial in primary.entries:
            primary_index.setdefault(identity.short_name, []).append(identity)
            add(identity)

        candidates = [
            (snapshot, identity, partial)
            for snapshot in secondaries
            if snapshot.kind in ORPHAN_ORIGIN_KINDS
            for identity, partial in snapshot.entries
            if identity.short_name not in primary_index
        ]
        groups, _ambiguous = group_orphan_candidates(candidates)
        for group in groups:
            if self.orphan_filter(group.classifier()):
                add(group.identity)

        return targets

    async def _collect_directory(
        self,
        targets: List[DeviceIdentity],
        counters: _RunCounters,
    ) -> SourceSnapshot:
        directory = self.directory
        assert directory is not None

        collector = self._collector("directory lookup")
        outcomes = await collector.collect(
            targets, lambda identity: directory.lookup(identity.short_name)
        )

        entries: List[Tuple[DeviceIdentity, PartialRecord]] = []
        not_found = 0
        for identity in targets:
            outcome = outcomes.get(identity)
            if outcome is None:
                continue
            if outcome.failed and isinstance(outcome.error, DeviceNotFoundError):
                not_found += 1
                continue
            counters.tally(outcome)
            status = _fetch_status(outcome)
            if status is not None:
                entries.append((identity, PartialRecord(fetch_errors={"directory": status})))
            elif outcome.completed:
                entries.append((identity, PartialRecord(directory=outcome.result)))

        if not_found:
            logger.info("%d device(s) have no %s object", not_found, directory.name)
        return SourceSnapshot.from_pairs(directory.name, SourceKind.DIRECTORY, entries)

    def _telemetry_hostname(self, identity: DeviceIdentity) -> str:
        suffix = (self.config.telemetry_dns_suffix or "").strip(".")
        if suffix:
            return f"{identity.short_name.lower()}.{suffix}"
        return identity.short_name.lower()

    async def _collect_telemetry(
        self,
        targets: List[DeviceIdentity],
        counters: _RunCounters,
    ) -> SourceSnapshot:
        telemetry = self.telemetry
        assert telemetry is not None
        timeout = float(self.config.telemetry_timeout)

        collector = self._collector("telemetry", timeout=timeout)
        outcomes = await collector.collect(
            targets,
            lambda identity: telemetry.get_telemetry(self._telemetry_hostname(identity), timeout),
        )

        entries: List[Tuple[DeviceIdentity, PartialRecord]] = []
        for identity in targets:
            outcome = outcomes.get(identity)
            if outcome is None:
                continue
            if outcome.timed_out:
                group = TelemetryGroup.marker(TelemetryStatus.TIMED_OUT, str(outcome.error))
            elif outcome.failed:
                group = TelemetryGroup.marker(TelemetryStatus.UNREACHABLE, str(outcome.error))
            else:
                group = outcome.result

            fetch_errors: Dict[str, FetchStatus] = {}
            if group.status == TelemetryStatus.TIMED_OUT:
                counters.timed_out += 1
                fetch_errors["telemetry"] = FetchStatus.TIMED_OUT
            elif group.status == TelemetryStatus.UNREACHABLE:
                counters.unreachable += 1
                fetch_errors["telemetry"] = FetchStatus.UNREACHABLE
            entries.append((identity, PartialRecord(telemetry=group, fetch_errors=fetch_errors)))

        return SourceSnapshot.from_pairs(telemetry.name, SourceKind.TELEMETRY, entries)


def create_inventory_service(config: Optional[Settings] = None) -> InventoryRunService:
    """Wire adapters from configuration: snapshot file or live WinRM sources."""

    config = config or settings

    if config.snapshot_file:
        from ..adapters.static import load_snapshot

        adapters = load_snapshot(Path(config.snapshot_file))
        return InventoryRunService(
            adapters.provisioning,
            broker=adapters.broker,
            controllers=adapters.controllers,
            virtualization=adapters.virtualization,
            directory=adapters.directory,
            telemetry=adapters.telemetry,
            config=config,
        )

    from ..adapters.powershell import (
        ActiveDirectoryAdapter,
        BrokerPowerShellAdapter,
        PowerCLIAdapter,
        PvsPowerShellAdapter,
        WinRMTelemetryAdapter,
    )

    management_host = config.winrm_host or "localhost"
    listing_timeout = config.winrm_operation_timeout

    return InventoryRunService(
        [PvsPowerShellAdapter(server) for server in config.get_pvs_servers_list()],
        broker=BrokerPowerShellAdapter(management_host, timeout=listing_timeout),
        controllers=config.get_broker_controllers_list(),
        virtualization=[
            PowerCLIAdapter(vcenter, management_host, timeout=listing_timeout)
            for vcenter in config.get_vcenter_servers_list()
        ],
        directory=ActiveDirectoryAdapter(
            management_host,
            server=config.directory_server,
            search_base=config.ad_search_base,
        ),
        telemetry=WinRMTelemetryAdapter(),
        config=config,
    )


__all__ = [
    "InventoryRunError",
    "InventoryRunService",
    "create_inventory_service",
]

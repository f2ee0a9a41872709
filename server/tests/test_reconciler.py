"""Unit tests for cross-source reconciliation."""

import pytest
from pydantic import ValidationError

from fleet_inventory.core.identity import normalize_identity
from fleet_inventory.core.models import (
    DeviceIdentity,
    DirectoryGroup,
    FetchStatus,
    OrchestrationGroup,
    PartialRecord,
    ProvisioningGroup,
    SourceKind,
    TelemetryGroup,
    TelemetryStatus,
    VirtualizationGroup,
    WarningKind,
)
from fleet_inventory.services.reconciler import OrphanFilter, Reconciler, SourceSnapshot


def _pvs(*names):
    return SourceSnapshot.from_pairs(
        "provisioning",
        SourceKind.PROVISIONING,
        [
            (
                normalize_identity(name),
                PartialRecord(name=name, provisioning=ProvisioningGroup(device_name=name)),
            )
            for name in names
        ],
    )


def _broker(*machines):
    """``machines`` are ``(name, provisioning type, delivery group)`` tuples."""

    return SourceSnapshot.from_pairs(
        "broker",
        SourceKind.ORCHESTRATION,
        [
            (
                normalize_identity(name),
                PartialRecord(
                    name=name,
                    orchestration=OrchestrationGroup(
                        provisioning_type=ptype, delivery_group=group
                    ),
                ),
            )
            for name, ptype, group in machines
        ],
    )


def _vcenter(*vms):
    return SourceSnapshot.from_pairs(
        "vcenter:vc01",
        SourceKind.VIRTUALIZATION,
        [
            (
                normalize_identity(name, split_char="_"),
                PartialRecord(name=name, virtualization=VirtualizationGroup(vm_name=name, num_cpu=cpu)),
            )
            for name, cpu in vms
        ],
    )


@pytest.mark.unit
class TestUnionAndOrphans:
    """Union completeness and orphan detection."""

    def test_every_primary_device_appears_once(self):
        primary = _pvs("CORP\\VDI001", "CORP\\VDI002", "CORP\\VDI003")
        broker = _broker(("CORP\\VDI001", "PVS", "Desktops"))

        result = Reconciler(OrphanFilter()).reconcile(primary, [broker])

        assert list(result.records) == ["CORP\\VDI001", "CORP\\VDI002", "CORP\\VDI003"]
        assert not any(record.orphan for record in result.records.values())
        assert result.records["CORP\\VDI001"].orchestration.delivery_group == "Desktops"
        assert result.records["CORP\\VDI002"].orchestration is None

    def test_orphan_included_when_filter_accepts(self):
        primary = _pvs("CORP\\VDI001", "CORP\\VDI002", "CORP\\VDI003")
        broker = _broker(
            ("CORP\\VDI001", "PVS", "Desktops"),
            ("CORP\\VDI004", "PVS", "Desktops"),
        )

        result = Reconciler(OrphanFilter(provisioning_types=frozenset({"PVS"}))).reconcile(
            primary, [broker]
        )

        assert len(result.records) == 4
        orphan = result.records["CORP\\VDI004"]
        assert orphan.orphan is True
        assert orphan.provenance == "broker"
        assert orphan.provisioning is None
        assert result.orphan_counts == {"broker": 1}

    def test_orphan_excluded_when_filter_rejects(self):
        primary = _pvs("CORP\\VDI001", "CORP\\VDI002", "CORP\\VDI003")
        broker = _broker(
            ("CORP\\VDI001", "PVS", "Desktops"),
            ("CORP\\VDI004", "PVS", "Desktops"),
        )

        result = Reconciler(OrphanFilter(provisioning_types=frozenset({"MCS"}))).reconcile(
            primary, [broker]
        )

        assert len(result.records) == 3
        assert "CORP\\VDI004" not in result.records
        assert result.orphan_counts == {}

    def test_unclassified_orphans_follow_filter_setting(self):
        primary = _pvs("CORP\\VDI001")
        vcenter = _vcenter(("VDI009_clone", 2))

        excluded = Reconciler(OrphanFilter()).reconcile(primary, [vcenter])
        included = Reconciler(OrphanFilter(include_unclassified=True)).reconcile(primary, [vcenter])

        assert "VDI009" not in excluded.records
        assert included.records["VDI009"].orphan is True
        assert included.orphan_counts == {"vcenter:vc01": 1}

    def test_orphan_filter_always_includes(self):
        primary = _pvs("CORP\\VDI001")
        broker = _broker(("CORP\\VDI050", "MCS", "Apps"))

        result = Reconciler(OrphanFilter(provisioning_types=frozenset(), always=True)).reconcile(
            primary, [broker]
        )

        assert result.records["CORP\\VDI050"].orphan is True

    def test_orphan_found_in_two_sources_is_merged(self):
        primary = _pvs("CORP\\VDI001")
        broker = _broker(("CORP\\VDI004", "PVS", "Desktops"))
        vcenter = _vcenter(("VDI004_clone", 4))

        result = Reconciler(OrphanFilter()).reconcile(primary, [vcenter, broker])

        orphan = result.records["CORP\\VDI004"]
        assert orphan.provenance == "broker"
        assert orphan.virtualization.num_cpu == 4
        assert orphan.sources == ["broker", "vcenter:vc01"]
        assert result.orphan_counts == {"broker": 1}

    def test_orphan_classification_comes_from_highest_precedence_sighting(self):
        primary = _pvs("CORP\\A")
        broker = _broker(("CORP\\D", "MCS", "Apps"))
        vcenter = _vcenter(("D", 2))
        orphan_filter = OrphanFilter(provisioning_types=frozenset({"PVS"}), include_unclassified=True)

        result = Reconciler(orphan_filter).reconcile(primary, [vcenter, broker])

        assert list(result.records) == ["CORP\\A"]
        assert result.orphan_counts == {}

    def test_classified_sighting_admits_unclassified_vm(self):
        primary = _pvs("CORP\\A")
        broker = _broker(("CORP\\D", "PVS", "Desktops"))
        vcenter = _vcenter(("D", 2))

        result = Reconciler(OrphanFilter(include_unclassified=False)).reconcile(
            primary, [vcenter, broker]
        )

        orphan = result.records["CORP\\D"]
        assert orphan.provenance == "broker"
        assert orphan.virtualization.num_cpu == 2
        assert "D" not in result.records

    def test_directory_and_telemetry_never_create_records(self):
        primary = _pvs("CORP\\VDI001")
        directory = SourceSnapshot.from_pairs(
            "ad",
            SourceKind.DIRECTORY,
            [(DeviceIdentity("VDI777"), PartialRecord(directory=DirectoryGroup(description="stale")))],
        )
        telemetry = SourceSnapshot.from_pairs(
            "telemetry",
            SourceKind.TELEMETRY,
            [(DeviceIdentity("VDI888"), PartialRecord(telemetry=TelemetryGroup(cpu_percent=1.0)))],
        )

        result = Reconciler(OrphanFilter(always=True)).reconcile(primary, [directory, telemetry])

        assert list(result.records) == ["CORP\\VDI001"]

    def test_directory_entries_attach_to_orphans(self):
        primary = _pvs("CORP\\VDI001")
        broker = _broker(("CORP\\VDI004", "PVS", "Desktops"))
        directory = SourceSnapshot.from_pairs(
            "ad",
            SourceKind.DIRECTORY,
            [(DeviceIdentity("VDI004"), PartialRecord(directory=DirectoryGroup(description="orphan")))],
        )

        result = Reconciler(OrphanFilter()).reconcile(primary, [directory, broker])

        assert result.records["CORP\\VDI004"].directory.description == "orphan"


@pytest.mark.unit
class TestMergeSemantics:
    """Correlation, precedence and determinism."""

    def test_backslash_and_fqdn_names_merge_into_one_record(self):
        primary = _pvs("CORP\\SRV01")
        directory = SourceSnapshot.from_pairs(
            "ad",
            SourceKind.DIRECTORY,
            [
                (
                    normalize_identity("srv01.corp.local"),
                    PartialRecord(directory=DirectoryGroup(description="Server")),
                )
            ],
        )

        result = Reconciler(OrphanFilter()).reconcile(primary, [directory])

        assert list(result.records) == ["CORP\\SRV01"]
        record = result.records["CORP\\SRV01"]
        assert record.directory.description == "Server"
        assert record.sources == ["provisioning", "ad"]

    def test_domainless_entry_matches_domain_qualified_primary(self):
        primary = _pvs("CORP\\VDI001")
        vcenter = _vcenter(("VDI001_clone", 2))

        result = Reconciler(OrphanFilter(include_unclassified=True)).reconcile(primary, [vcenter])

        assert list(result.records) == ["CORP\\VDI001"]
        assert result.records["CORP\\VDI001"].virtualization.num_cpu == 2

    def test_higher_precedence_source_wins_shared_fields(self):
        primary = _pvs("CORP\\VDI001")
        broker = SourceSnapshot.from_pairs(
            "broker",
            SourceKind.ORCHESTRATION,
            [(DeviceIdentity("VDI001", "CORP"), PartialRecord(telemetry=TelemetryGroup(cpu_percent=10.0)))],
        )
        telemetry = SourceSnapshot.from_pairs(
            "telemetry",
            SourceKind.TELEMETRY,
            [
                (
                    DeviceIdentity("VDI001"),
                    PartialRecord(telemetry=TelemetryGroup(cpu_percent=90.0, uptime_hours=5.0)),
                )
            ],
        )

        forward = Reconciler(OrphanFilter()).reconcile(primary, [broker, telemetry])
        reverse = Reconciler(OrphanFilter()).reconcile(primary, [telemetry, broker])

        for result in (forward, reverse):
            group = result.records["CORP\\VDI001"].telemetry
            assert group.cpu_percent == 10.0
            # Lower precedence still fills fields nobody else set.
            assert group.uptime_hours == 5.0
        assert forward.records == reverse.records

    def test_reconcile_is_idempotent(self):
        primary = _pvs("CORP\\VDI001", "CORP\\VDI002")
        broker = _broker(("CORP\\VDI001", "PVS", "Desktops"), ("CORP\\VDI005", "PVS", "Desktops"))
        vcenter = _vcenter(("VDI002_clone", 2))
        reconciler = Reconciler(OrphanFilter())

        first = reconciler.reconcile(primary, [broker, vcenter])
        second = reconciler.reconcile(primary, [broker, vcenter])

        assert first.records == second.records
        assert [record.model_dump_json() for record in first.records.values()] == [
            record.model_dump_json() for record in second.records.values()
        ]
        assert first.orphan_counts == second.orphan_counts
        assert first.warnings == second.warnings

    def test_reconcile_does_not_mutate_inputs(self):
        primary = _pvs("CORP\\VDI001")
        vcenter = _vcenter(("VDI001_clone", 2))

        Reconciler(OrphanFilter()).reconcile(primary, [vcenter])

        assert vcenter.entries[0][1].provisioning is None
        assert primary.entries[0][1].virtualization is None

    def test_merged_records_are_frozen(self):
        primary = _pvs("CORP\\VDI001")
        broker = _broker(("CORP\\VDI001", "PVS", "Desktops"))

        record = Reconciler(OrphanFilter()).reconcile(primary, [broker]).records["CORP\\VDI001"]

        with pytest.raises(ValidationError):
            record.orphan = True
        with pytest.raises(ValidationError):
            record.orchestration.delivery_group = "Other"

    def test_fetch_errors_are_carried_onto_the_record(self):
        primary = SourceSnapshot.from_pairs(
            "provisioning",
            SourceKind.PROVISIONING,
            [
                (
                    DeviceIdentity("VDI001", "CORP"),
                    PartialRecord(name="VDI001", fetch_errors={"provisioning": FetchStatus.TIMED_OUT}),
                )
            ],
        )
        directory = SourceSnapshot.from_pairs(
            "directory",
            SourceKind.DIRECTORY,
            [(DeviceIdentity("VDI001"), PartialRecord(fetch_errors={"directory": FetchStatus.FAILED}))],
        )

        record = Reconciler(OrphanFilter()).reconcile(primary, [directory]).records["CORP\\VDI001"]

        assert record.provisioning is None
        assert record.fetch_errors == {
            "provisioning": FetchStatus.TIMED_OUT,
            "directory": FetchStatus.FAILED,
        }
        assert record.sources == []

    def test_telemetry_marker_is_merged_as_data(self):
        primary = _pvs("CORP\\VDI001")
        telemetry = SourceSnapshot.from_pairs(
            "telemetry",
            SourceKind.TELEMETRY,
            [
                (
                    DeviceIdentity("VDI001"),
                    PartialRecord(telemetry=TelemetryGroup.marker(TelemetryStatus.TIMED_OUT, "slow")),
                )
            ],
        )

        result = Reconciler(OrphanFilter()).reconcile(primary, [telemetry])

        group = result.records["CORP\\VDI001"].telemetry
        assert group.status == TelemetryStatus.TIMED_OUT
        assert group.error == "slow"
        assert group.cpu_percent is None


@pytest.mark.unit
class TestWarnings:
    """Duplicates and merge conflicts surface as warnings."""

    def test_duplicate_in_primary_keeps_first_entry(self):
        primary = SourceSnapshot.from_pairs(
            "provisioning",
            SourceKind.PROVISIONING,
            [
                (DeviceIdentity("VDI001", "CORP"), PartialRecord(provisioning=ProvisioningGroup(site="A"))),
                (DeviceIdentity("VDI001", "CORP"), PartialRecord(provisioning=ProvisioningGroup(site="B"))),
            ],
        )

        result = Reconciler(OrphanFilter()).reconcile(primary, [])

        assert len(result.records) == 1
        assert result.records["CORP\\VDI001"].provisioning.site == "A"
        assert [warning.kind for warning in result.warnings] == [WarningKind.DUPLICATE_IDENTITY]
        assert result.warnings[0].source == "provisioning"

    def test_duplicate_in_secondary_keeps_first_entry(self):
        primary = _pvs("CORP\\VDI001")
        vcenter = _vcenter(("VDI001_a", 2), ("VDI001_b", 8))

        result = Reconciler(OrphanFilter()).reconcile(primary, [vcenter])

        assert result.records["CORP\\VDI001"].virtualization.num_cpu == 2
        assert result.warnings[0].kind == WarningKind.DUPLICATE_IDENTITY
        assert result.warnings[0].identity == "VDI001"

    def test_domain_disagreement_is_a_merge_conflict(self):
        primary = _pvs("CORP\\VDI001")
        broker = _broker(("LAB\\VDI001", "PVS", "Lab"))

        result = Reconciler(OrphanFilter()).reconcile(primary, [broker])

        assert list(result.records) == ["CORP\\VDI001"]
        assert result.records["CORP\\VDI001"].orchestration is None
        assert [warning.kind for warning in result.warnings] == [WarningKind.MERGE_CONFLICT]

    def test_ambiguous_match_is_a_merge_conflict(self):
        primary = _pvs("CORP\\VDI001", "LAB\\VDI001")
        vcenter = _vcenter(("VDI001", 2))

        result = Reconciler(OrphanFilter()).reconcile(primary, [vcenter])

        assert len(result.records) == 2
        assert all(record.virtualization is None for record in result.records.values())
        assert result.warnings[0].kind == WarningKind.MERGE_CONFLICT
        assert result.warnings[0].source == "vcenter:vc01"

    def test_vm_matching_two_orphans_is_a_merge_conflict(self):
        primary = _pvs("CORP\\VDI001")
        broker = _broker(("CORP\\VDI007", "PVS", "Desktops"), ("LAB\\VDI007", "PVS", "Desktops"))
        vcenter = _vcenter(("VDI007", 4))

        result = Reconciler(OrphanFilter()).reconcile(primary, [vcenter, broker])

        assert result.records["CORP\\VDI007"].virtualization is None
        assert result.records["LAB\\VDI007"].virtualization is None
        assert [warning.kind for warning in result.warnings] == [WarningKind.MERGE_CONFLICT]
        assert result.warnings[0].source == "vcenter:vc01"


@pytest.mark.unit
class TestOrphanFilter:
    def test_provisioning_type_comparison_is_case_insensitive(self):
        record = PartialRecord(orchestration=OrchestrationGroup(provisioning_type="pvs"))

        assert OrphanFilter(provisioning_types=frozenset({"PVS"}))(record) is True
        assert OrphanFilter(provisioning_types=frozenset({"MCS"}))(record) is False

    def test_from_settings(self):
        from fleet_inventory.core.config import Settings

        config = Settings(
            orphan_provisioning_types="pvs, mcs",
            orphan_include_unclassified=True,
            orphan_always_include=False,
        )

        orphan_filter = OrphanFilter.from_settings(config)

        assert orphan_filter.provisioning_types == frozenset({"PVS", "MCS"})
        assert orphan_filter.include_unclassified is True
        assert orphan_filter.always is False

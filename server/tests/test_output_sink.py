"""Tests for the aggregate hand-off and the command line entry point."""

import io
import json

import pytest
from pydantic import ValidationError

from fleet_inventory import main as main_module
from fleet_inventory.core.config import Settings
from fleet_inventory.core.models import (
    DeviceRecord,
    FetchStatus,
    ProvisioningGroup,
    ReconcileWarning,
    ResultAggregate,
    RunManifest,
    TelemetryGroup,
    TelemetryStatus,
    WarningKind,
)
from fleet_inventory.services.output_sink import JsonSink


def _aggregate():
    record = DeviceRecord(
        short_name="VDI001",
        domain="CORP",
        provisioning=ProvisioningGroup(disk_name="Store1\\Win10", disk_versions=["3:Production"]),
        telemetry=TelemetryGroup.marker(TelemetryStatus.TIMED_OUT, "slow"),
        sources=["provisioning", "telemetry"],
        fetch_errors={"telemetry": FetchStatus.TIMED_OUT},
    )
    manifest = RunManifest(
        primary_source="provisioning",
        total_records=1,
        timed_out_count=1,
        warnings=[
            ReconcileWarning(
                kind=WarningKind.SOURCE_UNAVAILABLE,
                message="vcenter:vc01 unavailable: refused",
                source="vcenter:vc01",
            )
        ],
    )
    return ResultAggregate(records={"CORP\\VDI001": record}, manifest=manifest)


@pytest.mark.unit
def test_json_sink_writes_to_stream():
    stream = io.StringIO()

    JsonSink(stream=stream).write(_aggregate())

    payload = json.loads(stream.getvalue())
    assert payload["manifest"]["timed_out_count"] == 1
    assert payload["manifest"]["warnings"][0]["kind"] == "source_unavailable"
    record = payload["records"]["CORP\\VDI001"]
    assert record["telemetry"]["status"] == "timed_out"
    assert record["provisioning"]["disk_name"] == "Store1\\Win10"


@pytest.mark.unit
def test_json_sink_writes_to_file(tmp_path):
    target = tmp_path / "out" / "inventory.json"

    JsonSink(target).write(_aggregate())

    payload = json.loads(target.read_text(encoding="utf-8"))
    assert payload["manifest"]["total_records"] == 1


@pytest.mark.unit
def test_aggregate_is_read_only():
    aggregate = _aggregate()
    record = aggregate.records["CORP\\VDI001"]

    with pytest.raises(ValidationError):
        aggregate.manifest = RunManifest(primary_source="other")
    with pytest.raises(ValidationError):
        record.orphan = True
    with pytest.raises(ValidationError):
        record.provisioning.disk_name = "Store2\\Win11"
    with pytest.raises(ValidationError):
        record.telemetry.status = TelemetryStatus.OK


@pytest.mark.unit
def test_to_rows_flattens_groups():
    rows = _aggregate().to_rows()

    assert rows == [
        {
            "device": "CORP\\VDI001",
            "orphan": False,
            "provenance": None,
            "sources": "provisioning,telemetry",
            "fetch_errors": "telemetry=timed_out",
            "provisioning.device_name": None,
            "provisioning.disk_name": "Store1\\Win10",
            "provisioning.store_name": None,
            "provisioning.store_path": None,
            "provisioning.disk_version": None,
            "provisioning.disk_versions": "3:Production",
            "provisioning.retries": None,
            "provisioning.write_cache_type": None,
            "provisioning.site": None,
            "provisioning.collection": None,
            "provisioning.server": None,
            "provisioning.active": None,
            "provisioning.mac_address": None,
            "telemetry.status": "timed_out",
            "telemetry.boot_time": None,
            "telemetry.uptime_hours": None,
            "telemetry.free_memory_percent": None,
            "telemetry.cpu_percent": None,
            "telemetry.free_disk_percent": None,
            "telemetry.domain_trust": None,
            "telemetry.error": "slow",
        }
    ]


@pytest.mark.unit
@pytest.mark.anyio("asyncio")
async def test_run_snapshot_writes_aggregate(tmp_path):
    snapshot = tmp_path / "fleet.yaml"
    snapshot.write_text(
        "provisioning:\n  - server: pvs01\n    devices:\n      - {name: VDI001}\n",
        encoding="utf-8",
    )
    stream = io.StringIO()

    exit_code = await main_module.run_snapshot(
        Settings(snapshot_file=str(snapshot)), JsonSink(stream=stream)
    )

    assert exit_code == 0
    assert list(json.loads(stream.getvalue())["records"]) == ["VDI001"]


@pytest.mark.unit
@pytest.mark.anyio("asyncio")
async def test_run_snapshot_returns_error_code_without_primary(tmp_path):
    snapshot = tmp_path / "fleet.yaml"
    snapshot.write_text("provisioning:\n  - server: pvs01\n    unavailable: true\n", encoding="utf-8")
    stream = io.StringIO()

    exit_code = await main_module.run_snapshot(
        Settings(snapshot_file=str(snapshot)), JsonSink(stream=stream)
    )

    assert exit_code == 1
    assert stream.getvalue() == ""


@pytest.mark.unit
def test_main_returns_config_error_code(monkeypatch):
    monkeypatch.setattr(main_module, "configure_logging", lambda config: None)

    # Default settings have no primary source configured.
    assert main_module.main() == 2

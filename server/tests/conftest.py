"""Test configuration for server test suite."""

import os

import pytest

# Keep developer .env / shell settings from leaking into the defaults under test.
for _name in (
    "PVS_SERVERS",
    "BROKER_CONTROLLERS",
    "VCENTER_SERVERS",
    "SNAPSHOT_FILE",
    "WINRM_HOST",
    "WINRM_USERNAME",
    "WINRM_PASSWORD",
):
    os.environ.pop(_name, None)


@pytest.fixture
def anyio_backend():
    return "asyncio"

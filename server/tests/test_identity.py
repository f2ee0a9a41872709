"""Tests for canonical device identities."""

import pytest

from fleet_inventory.core.identity import normalize_identity
from fleet_inventory.core.models import DeviceIdentity


@pytest.mark.unit
class TestNormalizeIdentity:
    """Name formats reported by the different sources."""

    def test_domain_qualified_name(self):
        identity = normalize_identity("CORP\\srv01")

        assert identity == DeviceIdentity(short_name="SRV01", domain="CORP")
        assert identity.canonical == "CORP\\SRV01"

    def test_fqdn_implies_first_domain_label(self):
        identity = normalize_identity("srv01.corp.local")

        assert identity.short_name == "SRV01"
        assert identity.domain == "CORP"

    def test_backslash_and_fqdn_forms_are_the_same_device(self):
        assert normalize_identity("CORP\\SRV01") == normalize_identity("srv01.corp.local")

    def test_short_name_only(self):
        identity = normalize_identity(" vdi001 ")

        assert identity.short_name == "VDI001"
        assert identity.domain is None
        assert identity.canonical == "VDI001"

    def test_split_char_strips_hypervisor_suffix(self):
        identity = normalize_identity("VDI001_clone_2", split_char="_")

        assert identity == DeviceIdentity(short_name="VDI001")

    def test_split_char_with_empty_prefix_keeps_name(self):
        identity = normalize_identity("_template", split_char="_")

        assert identity.short_name == "_TEMPLATE"

    def test_explicit_domain_overrides_implied_domain(self):
        identity = normalize_identity("srv01.lab.local", domain="corp.example.com")

        assert identity.domain == "CORP"

    def test_unparsable_names_degrade_to_whole_string(self):
        assert normalize_identity("CORP\\").short_name == "CORP\\"
        assert normalize_identity(".hidden").short_name == ".HIDDEN"
        assert normalize_identity("").short_name == ""
        assert normalize_identity(None).short_name == ""

    def test_leading_backslash_has_no_domain(self):
        identity = normalize_identity("\\srv01")

        assert identity == DeviceIdentity(short_name="SRV01")


@pytest.mark.unit
class TestIdentityMatching:
    """Domain-aware correlation rule."""

    def test_matches_when_one_side_has_no_domain(self):
        assert DeviceIdentity("SRV01", "CORP").matches(DeviceIdentity("SRV01"))
        assert DeviceIdentity("SRV01").matches(DeviceIdentity("SRV01", "LAB"))

    def test_matches_requires_equal_domains_when_both_present(self):
        corp = DeviceIdentity("SRV01", "CORP")
        lab = DeviceIdentity("SRV01", "LAB")

        assert not corp.matches(lab)
        assert corp.conflicts_with(lab)

    def test_different_short_names_never_match(self):
        assert not DeviceIdentity("SRV01").matches(DeviceIdentity("SRV02"))
        assert not DeviceIdentity("SRV01", "CORP").conflicts_with(DeviceIdentity("SRV02", "LAB"))

    def test_identities_are_usable_as_dictionary_keys(self):
        mapping = {DeviceIdentity("SRV01", "CORP"): 1, DeviceIdentity("SRV01"): 2}

        assert len(mapping) == 2
        assert mapping[normalize_identity("srv01.corp.local")] == 1

"""Unit tests for evselink._registry — device records and merge rules.

Test Techniques Used:
    - Specification-based Testing: add / rename / remove
    - Property-based Reasoning: credential propagation invariant
    - State Transition Testing: rediscovery at a new address
"""

from __future__ import annotations

from evselink._poll import ProbeResult
from evselink._registry import Device, DeviceRegistry


class TestDevice:
    """Technique: Specification-based Testing."""

    def test_paired_only_with_non_empty_credential(self) -> None:
        assert Device("1", credential="tok").is_paired
        assert not Device("1", credential="").is_paired
        assert not Device("1").is_paired

    def test_label_fallback(self) -> None:
        assert Device("12345").label() == "SmartEVSE-12345"
        assert Device("12345", display_name="Garage").label() == "Garage"


class TestDeviceRegistry:
    """Technique: Specification-based Testing."""

    def test_add_merges_only_set_fields(self) -> None:
        registry = DeviceRegistry([Device("1", address="10.0.0.5", credential="tok")])
        merged = registry.add(Device("1", display_name="Carport"))
        assert merged == Device("1", address="10.0.0.5", credential="tok", display_name="Carport")

    def test_rename_and_clear(self) -> None:
        registry = DeviceRegistry([Device("1")])
        assert registry.rename("1", "Garage").display_name == "Garage"
        assert registry.rename("1", "").display_name is None

    def test_remove(self) -> None:
        registry = DeviceRegistry([Device("1")])
        assert registry.remove("1") == Device("1")
        assert "1" not in registry
        assert len(registry) == 0

    def test_get_unknown_is_none(self) -> None:
        assert DeviceRegistry().get("404") is None


class TestMergeDiscovered:
    """Technique: State Transition Testing."""

    def test_new_serial_added(self) -> None:
        registry = DeviceRegistry()
        registry.merge_discovered([ProbeResult("7", "10.0.0.7")])
        assert registry.get("7") == Device("7", address="10.0.0.7")

    def test_moved_device_keeps_credential_and_name(self) -> None:
        registry = DeviceRegistry([Device("7", "10.0.0.7", "tok", "Garage")])
        registry.merge_discovered([ProbeResult("7", "10.0.0.70")])
        assert registry.get("7") == Device("7", "10.0.0.70", "tok", "Garage")


class TestApplyCredential:
    """Technique: Property-based Reasoning.

    After pairing, every record that held a credential, plus the paired
    one, holds the new credential; the rest are untouched.
    """

    def test_propagates_to_previously_paired(self) -> None:
        registry = DeviceRegistry(
            [
                Device("A", "10.0.0.1", credential="old"),
                Device("B", "10.0.0.2"),
                Device("C", "10.0.0.3", credential="older"),
            ],
        )
        changed = registry.apply_credential("B", "new")

        assert sorted(changed) == ["A", "B", "C"]
        assert {d.serial: d.credential for d in registry} == {"A": "new", "B": "new", "C": "new"}

    def test_unpaired_records_untouched(self) -> None:
        registry = DeviceRegistry([Device("A", "10.0.0.1"), Device("B", "10.0.0.2")])
        registry.apply_credential("A", "tok")
        assert registry.get("B") == Device("B", "10.0.0.2")

    def test_unknown_serial_created(self) -> None:
        registry = DeviceRegistry()
        assert registry.apply_credential("Z", "tok") == ["Z"]
        assert registry.get("Z") == Device("Z", credential="tok")

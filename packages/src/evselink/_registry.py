"""Device records and an in-memory registry.

Persistence is the embedding application's concern; this registry only
defines the merge rules every writer must follow.  The serial is the
join key, and each writer touches only its own fields:

* discovery updates ``address`` (creating unknown serials);
* pairing sets ``credential`` on the paired serial and on every record
  that already held one, since a credential belongs to the identity;
* renaming touches ``display_name`` only.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, replace

from evselink._poll import ProbeResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Device:
    """One known controller."""

    serial: str
    address: str | None = None
    credential: str | None = None
    display_name: str | None = None

    @property
    def is_paired(self) -> bool:
        return bool(self.credential)

    def label(self, product: str = "SmartEVSE") -> str:
        """Custom name, or ``{product}-{serial}``."""
        return self.display_name or f"{product}-{self.serial}"


class DeviceRegistry:
    """Serial-keyed device store with field-wise merge semantics."""

    def __init__(self, devices: Iterable[Device] = ()) -> None:
        self._devices: dict[str, Device] = {}
        for device in devices:
            self._devices[device.serial] = device

    def __iter__(self) -> Iterator[Device]:
        return iter(list(self._devices.values()))

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, serial: object) -> bool:
        return serial in self._devices

    def get(self, serial: str) -> Device | None:
        """Return the record for *serial*, if any.

        Usable as the engine's ``lookup`` callback.
        """
        return self._devices.get(serial)

    def add(self, device: Device) -> Device:
        """Register *device*, merging into an existing record.

        Only fields that are set on *device* overwrite stored values.
        """
        current = self._devices.get(device.serial)
        if current is None:
            self._devices[device.serial] = device
            return device
        merged = replace(
            current,
            address=device.address or current.address,
            credential=device.credential or current.credential,
            display_name=device.display_name or current.display_name,
        )
        self._devices[device.serial] = merged
        return merged

    def remove(self, serial: str) -> Device | None:
        """Remove and return the record for *serial*."""
        return self._devices.pop(serial, None)

    def rename(self, serial: str, name: str | None) -> Device:
        """Set or clear (empty / ``None``) the custom display name.

        Raises:
            KeyError: If *serial* is unknown.
        """
        device = self._devices[serial]
        updated = replace(device, display_name=name or None)
        self._devices[serial] = updated
        return updated

    def merge_discovered(self, found: Iterable[ProbeResult]) -> list[Device]:
        """Record discovery results: new serials are added, moved ones re-addressed."""
        updated: list[Device] = []
        for result in found:
            current = self._devices.get(result.serial)
            if current is None:
                device = Device(serial=result.serial, address=result.address)
            elif current.address != result.address:
                logger.info(
                    "Device %s moved from %s to %s",
                    result.serial,
                    current.address,
                    result.address,
                )
                device = replace(current, address=result.address)
            else:
                device = current
            self._devices[result.serial] = device
            updated.append(device)
        return updated

    def apply_credential(self, serial: str, credential: str) -> list[str]:
        """Store a newly issued credential.

        The paired *serial* (created if unknown) and every record that
        already holds a non-empty credential receive *credential*.
        Records without a credential are left untouched.

        Returns:
            Serials whose credential was updated.
        """
        if serial not in self._devices:
            self._devices[serial] = Device(serial=serial)
        changed: list[str] = []
        for key, device in list(self._devices.items()):
            if key == serial or device.is_paired:
                self._devices[key] = replace(device, credential=credential)
                changed.append(key)
        return changed

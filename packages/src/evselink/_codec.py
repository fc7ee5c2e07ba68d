"""Telemetry codec: channel payloads ⇄ canonical :class:`TelemetrySnapshot`.

Both transports describe the same controller state in different shapes:

* **push** — one MQTT message per field, topic suffix + string value
  (``ChargeCurrent`` = ``"160"``).
* **poll** — one nested JSON document per fetch
  (``{"settings": {"charge_current": 160}, ...}``).

Unit conversions are shared so the two paths yield identical numbers
for the same raw value::

    deciamps / 10   → amps
    watts / 1000    → kilowatts
    watt-hours/1000 → kilowatt-hours

Every snapshot field is optional.  A field whose raw value cannot be
decoded is simply left out of the result; it never invalidates the rest
of the message.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, fields, replace
from enum import IntEnum
from typing import Any

from evselink._errors import DecodeError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ChargeMode(IntEnum):
    """Charging mode; wire strings are the capitalised member names."""

    OFF = 0
    NORMAL = 1
    SOLAR = 2
    SMART = 3

    @property
    def label(self) -> str:
        """Wire representation, e.g. ``"Solar"``."""
        return self.name.capitalize()

    @classmethod
    def parse(cls, value: str) -> ChargeMode:
        """Parse a mode string case-insensitively.

        Raises:
            DecodeError: If *value* names no mode.
        """
        try:
            return cls[value.strip().upper()]
        except KeyError:
            msg = f"Unknown mode {value!r}"
            raise DecodeError(msg) from None


class LifecycleState(IntEnum):
    """Operational phase reported by the controller."""

    READY_TO_CHARGE = 0
    CONNECTED_TO_EV = 1
    CHARGING = 2
    D = 3
    REQUEST_STATE_B = 4
    STATE_B_OK = 5
    REQUEST_STATE_C = 6
    STATE_C_OK = 7
    ACTIVATE = 8
    CHARGING_STOPPED = 9
    STOP_CHARGING = 10

    @property
    def label(self) -> str:
        """Wire string, e.g. ``"Connected to EV"``."""
        return _STATE_LABELS[self]

    @classmethod
    def parse(cls, value: str) -> LifecycleState:
        """Map a wire string to a state; unknown strings map to id 0."""
        return _STATE_BY_LABEL.get(value, cls.READY_TO_CHARGE)


_STATE_LABELS: dict[LifecycleState, str] = {
    LifecycleState.READY_TO_CHARGE: "Ready to Charge",
    LifecycleState.CONNECTED_TO_EV: "Connected to EV",
    LifecycleState.CHARGING: "Charging",
    LifecycleState.D: "D",
    LifecycleState.REQUEST_STATE_B: "Request State B",
    LifecycleState.STATE_B_OK: "State B OK",
    LifecycleState.REQUEST_STATE_C: "Request State C",
    LifecycleState.STATE_C_OK: "State C OK",
    LifecycleState.ACTIVATE: "Activate",
    LifecycleState.CHARGING_STOPPED: "Charging Stopped",
    LifecycleState.STOP_CHARGING: "Stop Charging",
}
_STATE_BY_LABEL = {label: state for state, label in _STATE_LABELS.items()}

NO_ERROR = "None"

# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TelemetrySnapshot:
    """Canonical decoded controller state.

    ``None`` means "not known / not part of this update".  Currents are
    in amps, power in kW, energy in kWh.
    """

    version: str | None = None
    access: int | None = None
    charge_current: float | None = None
    override_current: float | None = None
    mode: ChargeMode | None = None
    phases: int | None = None
    lifecycle_state: LifecycleState | None = None
    state_text: str | None = None
    vehicle_connected: bool | None = None
    error: str | None = None
    load_balancing: int | None = None
    solar_stop_timer: int | None = None
    mains_l1: float | None = None
    mains_l2: float | None = None
    mains_l3: float | None = None
    power: float | None = None
    energy_charged: float | None = None
    energy_imported: float | None = None
    current_min: float | None = None
    current_max: float | None = None
    ev_meter_enabled: bool | None = None
    mains_meter_enabled: bool | None = None

    def merge(self, update: TelemetrySnapshot) -> TelemetrySnapshot:
        """Return a copy with every field set in *update* overwritten.

        Fields that are ``None`` in *update* keep their current value.
        """
        changes = update.present()
        if not changes:
            return self
        return replace(self, **changes)

    def present(self) -> dict[str, Any]:
        """Fields that carry a value, as a plain mapping."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    @property
    def is_empty(self) -> bool:
        """True when no field carries a value."""
        return not self.present()

    @property
    def has_error(self) -> bool:
        """True when the controller reports an error other than ``"None"``."""
        return self.error is not None and self.error != NO_ERROR

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly mapping; enums are rendered by name."""
        data = asdict(self)
        for key in ("mode", "lifecycle_state"):
            if data[key] is not None:
                data[key] = data[key].name
        return data


# ---------------------------------------------------------------------------
# Shared conversions
# ---------------------------------------------------------------------------


def _int(value: Any) -> int:
    if isinstance(value, bool):
        msg = f"Expected integer, got {value!r}"
        raise DecodeError(msg)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    msg = f"Expected integer, got {value!r}"
    raise DecodeError(msg)


def _number(value: Any) -> float:
    if isinstance(value, bool):
        msg = f"Expected number, got {value!r}"
        raise DecodeError(msg)
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            pass
    msg = f"Expected number, got {value!r}"
    raise DecodeError(msg)


def deciamps_to_amps(value: Any) -> float:
    """Deciamps (int or numeric string) → amps."""
    return _number(value) / 10.0


def milli(value: Any) -> float:
    """W → kW and Wh → kWh."""
    return _number(value) / 1000.0


def amps_to_deciamps(amps: float) -> int:
    """Amps → integer deciamps for command payloads."""
    return round(amps * 10)


def _text(value: Any) -> str:
    if value is None or isinstance(value, dict | list):
        msg = f"Expected text, got {value!r}"
        raise DecodeError(msg)
    return str(value)


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return _int(value) != 0


# ---------------------------------------------------------------------------
# Push path
# ---------------------------------------------------------------------------


def _decode_mode(value: str) -> dict[str, Any]:
    return {"mode": ChargeMode.parse(value)}


def _decode_state(value: str) -> dict[str, Any]:
    state = LifecycleState.parse(value)
    return {
        "lifecycle_state": state,
        "state_text": value,
        "vehicle_connected": state >= LifecycleState.CONNECTED_TO_EV,
    }


def _decode_mains_l1(value: str) -> dict[str, Any]:
    return {"mains_l1": deciamps_to_amps(value), "mains_meter_enabled": True}


def _decode_energy_charged(value: str) -> dict[str, Any]:
    return {"energy_charged": milli(value), "ev_meter_enabled": True}


def _field(name: str, convert: Callable[[Any], Any]) -> Callable[[str], dict[str, Any]]:
    return lambda value: {name: convert(value)}


_PUSH_DECODERS: dict[str, Callable[[str], dict[str, Any]]] = {
    "Version": _field("version", _text),
    "Access": _field("access", _int),
    "ChargeCurrent": _field("charge_current", deciamps_to_amps),
    "ChargeCurrentOverride": _field("override_current", deciamps_to_amps),
    "Mode": _decode_mode,
    "NrOfPhases": _field("phases", _int),
    "State": _decode_state,
    "Error": _field("error", _text),
    "LoadBl": _field("load_balancing", _int),
    "SolarStopTimer": _field("solar_stop_timer", _int),
    "MainsCurrentL1": _decode_mains_l1,
    "MainsCurrentL2": _field("mains_l2", deciamps_to_amps),
    "MainsCurrentL3": _field("mains_l3", deciamps_to_amps),
    "EVChargePower": _field("power", milli),
    "EVEnergyCharged": _decode_energy_charged,
    "EVImportActiveEnergy": _field("energy_imported", milli),
    "MaxCurrent": _field("current_max", deciamps_to_amps),
}

PUSH_STATE_TOPICS: tuple[str, ...] = tuple(_PUSH_DECODERS)
"""Topic suffixes the push transport subscribes to, in wire order."""


def decode_push(suffix: str, value: str) -> TelemetrySnapshot | None:
    """Decode one push message into a partial snapshot.

    Returns ``None`` for unrecognised topics (forward compatible with
    firmware that adds fields) and for values that fail to decode.
    """
    decoder = _PUSH_DECODERS.get(suffix)
    if decoder is None:
        return None
    try:
        return TelemetrySnapshot(**decoder(value))
    except DecodeError as exc:
        logger.debug("Dropping push field %s=%r: %s", suffix, value, exc)
        return None


# ---------------------------------------------------------------------------
# Poll path
# ---------------------------------------------------------------------------

_DISABLED = "Disabled"


def _poll_mode(value: Any) -> ChargeMode:
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return ChargeMode(value)
        except ValueError:
            msg = f"Unknown mode id {value!r}"
            raise DecodeError(msg) from None
    return ChargeMode.parse(_text(value))


# (section, key, snapshot field, converter); section None = top level.
_POLL_FIELDS: tuple[tuple[str | None, str, str, Callable[[Any], Any]], ...] = (
    (None, "version", "version", _text),
    (None, "mode", "mode", _poll_mode),
    ("evse", "state", "state_text", _text),
    ("evse", "connected", "vehicle_connected", _flag),
    ("evse", "error", "error", _text),
    ("evse", "loadbl", "load_balancing", _int),
    ("evse", "nrofphases", "phases", _int),
    ("evse", "solar_stop_timer", "solar_stop_timer", _int),
    ("settings", "charge_current", "charge_current", deciamps_to_amps),
    ("settings", "override_current", "override_current", deciamps_to_amps),
    ("settings", "current_min", "current_min", _number),
    ("settings", "current_max", "current_max", _number),
    ("settings", "mains_meter", "mains_meter_enabled", lambda v: _text(v) != _DISABLED),
    ("ev_meter", "description", "ev_meter_enabled", lambda v: _text(v) != _DISABLED),
    ("ev_meter", "import_active_power", "power", milli),
    ("ev_meter", "charged_wh", "energy_charged", milli),
    ("phase_currents", "L1", "mains_l1", deciamps_to_amps),
    ("phase_currents", "L2", "mains_l2", deciamps_to_amps),
    ("phase_currents", "L3", "mains_l3", deciamps_to_amps),
)


def _poll_state(evse: Mapping[str, Any]) -> LifecycleState | None:
    raw_id = evse.get("state_id")
    if raw_id is not None:
        try:
            return LifecycleState(_int(raw_id))
        except (DecodeError, ValueError):
            logger.debug("Ignoring state_id %r", raw_id)
    label = evse.get("state")
    if isinstance(label, str):
        return LifecycleState.parse(label)
    return None


def decode_poll(document: Any) -> TelemetrySnapshot:
    """Decode a status document into a snapshot.

    Raises:
        DecodeError: If *document* is not a JSON object.
    """
    if not isinstance(document, Mapping):
        msg = f"Status document must be an object, got {type(document).__name__}"
        raise DecodeError(msg)

    values: dict[str, Any] = {}
    for section, key, name, convert in _POLL_FIELDS:
        container = document if section is None else document.get(section)
        if not isinstance(container, Mapping) or container.get(key) is None:
            continue
        try:
            values[name] = convert(container[key])
        except DecodeError as exc:
            logger.debug("Dropping poll field %s.%s: %s", section, key, exc)

    evse = document.get("evse")
    if isinstance(evse, Mapping):
        state = _poll_state(evse)
        if state is not None:
            values["lifecycle_state"] = state
    return TelemetrySnapshot(**values)


def poll_serial(document: Any) -> str | None:
    """Return the device serial if *document* is a genuine status document.

    A genuine document is an object with an object ``evse`` section, a
    ``settings`` section and a non-empty ``serialnr``.
    """
    if not isinstance(document, Mapping):
        return None
    if not isinstance(document.get("evse"), Mapping) or "settings" not in document:
        return None
    serial = document.get("serialnr")
    if serial is None:
        return None
    text = str(serial).strip()
    return text or None

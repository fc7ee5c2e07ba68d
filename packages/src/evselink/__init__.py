"""evselink.

Client library for SmartEVSE-style charging controllers: discovers
devices on the LAN, keeps a live view over HTTP polling and MQTT push,
and fails over between the two.
"""

from importlib.metadata import PackageNotFoundError, version

from evselink._clock import ClockPort, SystemClock
from evselink._codec import (
    ChargeMode,
    LifecycleState,
    TelemetrySnapshot,
    decode_poll,
    decode_push,
)
from evselink._discovery import (
    Announcement,
    AnnouncementSource,
    DiscoveryEngine,
    ScanComplete,
    ScanPhase,
    ScanProgress,
    ZeroconfAnnouncementSource,
)
from evselink._engine import (
    ConnectivityStatus,
    EngineUpdate,
    FailoverState,
    Transport,
    TransportEngine,
    UpdateSubscription,
)
from evselink._errors import (
    CONNECTION_LOST,
    CONNECTION_UNAVAILABLE,
    CommandError,
    DecodeError,
    DiscoveryProbeError,
    EvseLinkError,
    NoDeviceSelectedError,
    PairError,
    PollError,
    PublishError,
    TransportError,
    TransportOpenError,
    TransportTimeoutError,
    user_message,
)
from evselink._logging import JsonFormatter, configure_logging
from evselink._pairing import PairingClient
from evselink._poll import PollCommand, PollPort, PollTransport, ProbeResult
from evselink._push import (
    PushPort,
    PushSession,
    PushSessionHandle,
    PushTransport,
    WillConfig,
)
from evselink._registry import Device, DeviceRegistry
from evselink._settings import (
    DiscoverySettings,
    EngineSettings,
    LoggingSettings,
    PairingSettings,
    PollSettings,
    PushSettings,
    Settings,
)

try:
    __version__ = version("evselink")
except PackageNotFoundError:
    # Source checkout without installed metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Engine
    "ConnectivityStatus",
    "EngineUpdate",
    "FailoverState",
    "Transport",
    "TransportEngine",
    "UpdateSubscription",
    # Codec
    "ChargeMode",
    "LifecycleState",
    "TelemetrySnapshot",
    "decode_poll",
    "decode_push",
    # Transports
    "PollCommand",
    "PollPort",
    "PollTransport",
    "ProbeResult",
    "PushPort",
    "PushSession",
    "PushSessionHandle",
    "PushTransport",
    "WillConfig",
    # Discovery
    "Announcement",
    "AnnouncementSource",
    "DiscoveryEngine",
    "ScanComplete",
    "ScanPhase",
    "ScanProgress",
    "ZeroconfAnnouncementSource",
    # Pairing & registry
    "Device",
    "DeviceRegistry",
    "PairingClient",
    # Clock
    "ClockPort",
    "SystemClock",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # Errors
    "CONNECTION_LOST",
    "CONNECTION_UNAVAILABLE",
    "CommandError",
    "DecodeError",
    "DiscoveryProbeError",
    "EvseLinkError",
    "NoDeviceSelectedError",
    "PairError",
    "PollError",
    "PublishError",
    "TransportError",
    "TransportOpenError",
    "TransportTimeoutError",
    "user_message",
    # Settings
    "DiscoverySettings",
    "EngineSettings",
    "LoggingSettings",
    "PairingSettings",
    "PollSettings",
    "PushSettings",
    "Settings",
]

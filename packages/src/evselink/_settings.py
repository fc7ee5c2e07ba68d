"""Configuration via pydantic-settings.

Settings are loaded from environment variables and/or a ``.env`` file.
Every variable carries the ``EVSELINK_`` prefix and nested models use
``__`` as the delimiter, e.g. ``EVSELINK_PUSH__HOST=broker.local``.

The tree mirrors the runtime components:

* **push** — MQTT broker session used by the push transport.
* **poll** — HTTP request bounds for the local poll transport.
* **engine** — failover timers (poll tick, push data timeout).
* **discovery** — announcement listening and subnet probing.
* **pairing** — remote pairing authority.
* **logging** — level, format, optional file sink.

All durations are in **seconds**.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# -------------------------------------------------------------------
# Sub-models (BaseModel, NOT BaseSettings, nested via composition)
# -------------------------------------------------------------------


class PushSettings(BaseModel):
    """MQTT broker session parameters for the push transport.

    Environment variables (with ``__`` nesting)::

        EVSELINK_PUSH__HOST=mqtt.smartevse.nl
        EVSELINK_PUSH__PORT=8883
        EVSELINK_PUSH__TLS=true
    """

    host: str = Field(
        default="mqtt.smartevse.nl",
        description="Broker hostname.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=8883,
        description="Broker port (TLS by default).",
    )
    tls: bool = Field(
        default=True,
        description="Wrap the broker connection in TLS.",
    )
    keepalive: Annotated[int, Field(ge=1)] = Field(
        default=30,
        description="MQTT keep-alive interval in seconds.",
    )
    connect_timeout: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Seconds to wait for the initial broker handshake.",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Fixed delay between automatic reconnection attempts.",
    )
    settle_delay: Annotated[float, Field(ge=0)] = Field(
        default=0.1,
        description=(
            "Pause after tearing down a previous session for the same "
            "device before a new one is opened."
        ),
    )
    qos: Annotated[int, Field(ge=0, le=2)] = Field(
        default=1,
        description="QoS used for subscriptions and publishes.",
    )
    client_id_prefix: str = Field(
        default="smartevse_app_",
        description="Prefix of the client identifier derived from the identity.",
    )


class PollSettings(BaseModel):
    """HTTP bounds for the local poll transport."""

    request_timeout: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Timeout for status fetches and commands.",
    )


class EngineSettings(BaseModel):
    """Timers driving the transport failover state machine."""

    poll_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description=(
            "Period of the poll tick.  The first tick also closes the "
            "grace window in which a push session may open."
        ),
    )
    data_timeout: Annotated[float, Field(gt=0)] = Field(
        default=30.0,
        description=(
            "Seconds without push telemetry before the session is "
            "considered stale and a poll probe is attempted."
        ),
    )


class DiscoverySettings(BaseModel):
    """Two-phase device discovery parameters."""

    service_type: str = Field(
        default="_http._tcp.local.",
        description="Multicast service type to browse.",
    )
    name_prefix: str = Field(
        default="smartevse-",
        description="Required (case-insensitive) service-name prefix.",
    )
    listen_duration: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="How long to collect announcements.",
    )
    announce_probe_timeout: Annotated[float, Field(gt=0)] = Field(
        default=3.0,
        description="Probe timeout for announced candidates.",
    )
    probe_timeout: Annotated[float, Field(gt=0)] = Field(
        default=2.0,
        description="Probe timeout for subnet sweep addresses.",
    )
    batch_size: Annotated[int, Field(ge=1)] = Field(
        default=50,
        description="Concurrent probes per subnet batch.",
    )
    max_devices: Annotated[int, Field(ge=1)] = Field(
        default=8,
        description="Upper bound on confirmed devices per scan.",
    )


class PairingSettings(BaseModel):
    """Remote pairing authority."""

    url: str = Field(
        default="https://mqtt.smartevse.nl/pair",
        description="Pairing endpoint (POST, JSON).",
    )
    timeout: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="Request timeout.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    The ``format`` field selects the output format:

    - ``"text"`` (default) — human-readable timestamped lines for
      terminal use.
    - ``"json"`` — structured JSON lines for log aggregators.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="text",
        description="Log output format ('json' or 'text').",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )
    library_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="WARNING",
        description="Level for the aiomqtt, aiohttp and zeroconf loggers.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for evselink.

    Example ``.env``::

        EVSELINK_IDENTITY=7d1f2c8e-0a4b-4a57-9a52-3f9a7e0b2c11
        EVSELINK_ENGINE__POLL_INTERVAL=5
        EVSELINK_LOGGING__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="EVSELINK_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    identity: str = Field(
        default="",
        description=(
            "Stable application identity (UUID) used for pairing and as "
            "the push-session username."
        ),
    )
    product: str = Field(
        default="SmartEVSE",
        description="Product name used in topic roots and display names.",
    )
    push: PushSettings = Field(default_factory=PushSettings)
    poll: PollSettings = Field(default_factory=PollSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    pairing: PairingSettings = Field(default_factory=PairingSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

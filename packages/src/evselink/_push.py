"""Push transport: MQTT session port and adapters.

Provides :class:`PushPort` (Protocol) and two implementations:

- :class:`PushTransport` — real aiomqtt-based sessions, one per device
- :class:`MockPushTransport` — test double that records calls and lets
  tests inject telemetry and connectivity changes

Session behaviour:

- TLS to a fixed broker, keep-alive 30 s, connect timeout 5 s
- username = application identity, password = pairing credential
- client identifier derived from the identity, so every open across
  the installation's lifetime reuses the same logical identity
- last will ``{prefix}/App/Status = offline`` for abnormal loss, plus
  explicit ``online`` on every (re)connect and ``offline`` on close
- reconnection with resubscription handled by the session's own
  connection loop at a fixed interval

``aiomqtt`` is imported lazily inside the connection loop so the mock
works without the dependency installed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from evselink._codec import TelemetrySnapshot, decode_push
from evselink._errors import PublishError, TransportOpenError
from evselink._settings import PushSettings
from evselink._topics import APP_STATUS, OFFLINE, ONLINE, DeviceTopics

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

TelemetryCallback = Callable[[TelemetrySnapshot], Awaitable[None]]
"""Async callback receiving one decoded partial snapshot."""

ConnectionCallback = Callable[[bool], Awaitable[None]]
"""Async callback receiving ``True`` on (re)connect, ``False`` on loss."""

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WillConfig:
    """Last-will message registered with the broker at connect time.

    Abstracts ``aiomqtt.Will`` so callers never depend on aiomqtt.
    """

    topic: str
    payload: str = OFFLINE
    qos: int = 1
    retain: bool = False


def build_will_config(topics: DeviceTopics) -> WillConfig:
    """Last will announcing ``offline`` on the device's app-status topic."""
    return WillConfig(topic=topics.app_status, payload=OFFLINE, qos=1)


def client_id_for(identity: str, prefix: str = "smartevse_app_") -> str:
    """Deterministic client identifier for *identity*."""
    return f"{prefix}{identity[:8]}"


# ---------------------------------------------------------------------------
# Ports (Protocol)
# ---------------------------------------------------------------------------


@runtime_checkable
class PushSessionHandle(Protocol):
    """What the engine may inspect on an open session."""

    @property
    def serial(self) -> str: ...

    @property
    def is_connected(self) -> bool: ...


@runtime_checkable
class PushPort(Protocol):
    """Port contract for the push transport."""

    async def open(
        self,
        serial: str,
        identity: str,
        credential: str,
        *,
        on_telemetry: TelemetryCallback,
        on_connection: ConnectionCallback,
    ) -> PushSessionHandle: ...

    async def close(self, session: PushSessionHandle) -> None: ...

    async def publish(
        self,
        session: PushSessionHandle,
        suffix: str,
        payload: str,
    ) -> None: ...


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


@dataclass
class PushSession:
    """One aiomqtt session scoped to one device.

    :meth:`start` returns once the first connection succeeded and raises
    :class:`TransportOpenError` if it fails or exceeds the connect
    timeout.  After that the background loop keeps the session alive,
    reporting losses and reconnects through ``on_connection``.
    """

    settings: PushSettings
    topics: DeviceTopics
    identity: str
    credential: str
    on_telemetry: TelemetryCallback | None = None
    on_connection: ConnectionCallback | None = None

    # internal state --------------------------------------------------------
    _client: Any = field(default=None, init=False, repr=False)
    _listen_task: asyncio.Task[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _opened: asyncio.Future[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _connected: asyncio.Event = field(
        default_factory=asyncio.Event,
        init=False,
        repr=False,
    )
    _stopping: bool = field(default=False, init=False, repr=False)

    @property
    def serial(self) -> str:
        return self.topics.serial

    @property
    def client_id(self) -> str:
        return client_id_for(self.identity, self.settings.client_id_prefix)

    @property
    def is_connected(self) -> bool:
        """Whether the session is currently connected to the broker."""
        return self._connected.is_set()

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Connect and subscribe; raise if the first attempt fails.

        Raises:
            TransportOpenError: Broker unreachable, credential rejected,
                TLS failure, or no answer within ``connect_timeout``.
        """
        self._stopping = False
        self._opened = asyncio.get_running_loop().create_future()
        self._listen_task = asyncio.create_task(self._connection_loop())
        try:
            await asyncio.wait_for(
                asyncio.shield(self._opened),
                timeout=self.settings.connect_timeout,
            )
        except TimeoutError as exc:
            await self.stop()
            msg = f"Push session for {self.serial} timed out"
            raise TransportOpenError(msg) from exc
        except (TransportOpenError, asyncio.CancelledError):
            await self.stop()
            raise

    async def stop(self) -> None:
        """Publish ``offline`` if connected, then tear the session down.

        Idempotent; safe to call multiple times.
        """
        if self.is_connected:
            with contextlib.suppress(PublishError):
                await self.publish(APP_STATUS, OFFLINE)
        self._stopping = True
        if self._listen_task is not None:
            self._listen_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listen_task
            self._listen_task = None
        if self._opened is not None and not self._opened.done():
            self._opened.cancel()
        self._client = None
        self._connected.clear()

    async def publish(self, suffix: str, payload: str) -> None:
        """Publish *payload* to ``{prefix}/{suffix}``.

        Raises:
            PublishError: If the session is not connected or the client
                rejected the message.
        """
        if self._client is None:
            msg = f"Push session for {self.serial} is not connected"
            raise PublishError(msg)
        topic = self.topics.topic(suffix)
        try:
            await self._client.publish(topic, payload, qos=self.settings.qos)
        except Exception as exc:
            msg = f"Publish to {topic} failed: {exc}"
            raise PublishError(msg) from exc
        logger.debug("Published %r to %s", payload, topic)

    # -- Internal -----------------------------------------------------------

    def _tls_context(self) -> ssl.SSLContext | None:
        return ssl.create_default_context() if self.settings.tls else None

    async def _connection_loop(self) -> None:
        """Maintain the session with fixed-interval reconnection."""
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError:
            self._fail_open(TransportOpenError("aiomqtt is required for push sessions"))
            return

        will = build_will_config(self.topics)
        while not self._stopping:
            try:
                async with aiomqtt.Client(
                    hostname=self.settings.host,
                    port=self.settings.port,
                    username=self.identity,
                    password=self.credential,
                    identifier=self.client_id,
                    keepalive=self.settings.keepalive,
                    timeout=self.settings.connect_timeout,
                    tls_context=self._tls_context(),
                    clean_session=True,
                    will=aiomqtt.Will(
                        topic=will.topic,
                        payload=will.payload,
                        qos=will.qos,
                        retain=will.retain,
                    ),
                ) as client:
                    self._client = client
                    try:
                        for topic in self.topics.subscriptions:
                            await client.subscribe(topic, qos=self.settings.qos)
                        await self.publish(APP_STATUS, ONLINE)

                        self._connected.set()
                        logger.info(
                            "Push session for %s connected to %s:%d",
                            self.serial,
                            self.settings.host,
                            self.settings.port,
                        )
                        if self._opened is not None and not self._opened.done():
                            self._opened.set_result(None)
                        await self._notify_connection(True)

                        async for message in client.messages:
                            await self._dispatch(message)
                    finally:
                        was_connected = self._connected.is_set()
                        self._connected.clear()
                        self._client = None
                        if was_connected and not self._stopping:
                            await self._notify_connection(False)

            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._opened is not None and not self._opened.done():
                    logger.warning("Push session for %s failed to open: %s", self.serial, exc)
                    self._fail_open(TransportOpenError(str(exc) or type(exc).__name__))
                    return
                logger.warning(
                    "Push session for %s lost, reconnecting in %.1fs",
                    self.serial,
                    self.settings.reconnect_interval,
                    exc_info=True,
                )
                await asyncio.sleep(self.settings.reconnect_interval)

    def _fail_open(self, error: TransportOpenError) -> None:
        if self._opened is not None and not self._opened.done():
            self._opened.set_exception(error)

    async def _notify_connection(self, connected: bool) -> None:
        if self.on_connection is None:
            return
        try:
            await self.on_connection(connected)
        except Exception:
            logger.exception("Error in connection callback for %s", self.serial)

    async def _dispatch(self, message: Any) -> None:
        """Decode an inbound message and hand it to ``on_telemetry``."""
        topic = str(message.topic)
        if message.payload is None:
            logger.debug("Skipping message with None payload on %s", topic)
            return

        suffix = self.topics.suffix(topic)
        if suffix is None:
            return
        payload = (
            message.payload.decode("utf-8", errors="replace")
            if isinstance(message.payload, (bytes, bytearray))
            else str(message.payload)
        )
        snapshot = decode_push(suffix, payload)
        if snapshot is None or self.on_telemetry is None:
            return
        try:
            await self.on_telemetry(snapshot)
        except Exception:
            logger.exception("Error in telemetry callback for %s", topic)


@dataclass
class PushTransport:
    """Opens, tracks and closes :class:`PushSession` objects.

    At most one session per serial exists; opening a second one tears
    the first down and waits ``settle_delay`` before connecting again.
    """

    settings: PushSettings = field(default_factory=PushSettings)
    product: str = "SmartEVSE"
    _sessions: dict[str, PushSession] = field(
        default_factory=dict,
        init=False,
        repr=False,
    )

    async def open(
        self,
        serial: str,
        identity: str,
        credential: str,
        *,
        on_telemetry: TelemetryCallback,
        on_connection: ConnectionCallback,
    ) -> PushSession:
        """Open a session for *serial*.

        Raises:
            TransportOpenError: If the first connection attempt fails.
        """
        previous = self._sessions.pop(serial, None)
        if previous is not None:
            logger.debug("Closing existing push session for %s before reopening", serial)
            await previous.stop()
            await asyncio.sleep(self.settings.settle_delay)

        session = PushSession(
            settings=self.settings,
            topics=DeviceTopics(product=self.product, serial=serial),
            identity=identity,
            credential=credential,
            on_telemetry=on_telemetry,
            on_connection=on_connection,
        )
        logger.debug("Opening push session for %s as %s", serial, session.client_id)
        self._sessions[serial] = session
        try:
            await session.start()
        except TransportOpenError:
            if self._sessions.get(serial) is session:
                del self._sessions[serial]
            raise
        return session

    async def close(self, session: PushSessionHandle) -> None:
        """Gracefully close *session* (publishes ``offline`` first)."""
        if self._sessions.get(session.serial) is session:
            del self._sessions[session.serial]
        if isinstance(session, PushSession):
            await session.stop()

    async def publish(
        self,
        session: PushSessionHandle,
        suffix: str,
        payload: str,
    ) -> None:
        """Publish on *session*.

        Raises:
            PublishError: If the session cannot accept the message.
        """
        if not isinstance(session, PushSession):
            msg = f"Unsupported session type {type(session).__name__}"
            raise PublishError(msg)
        await session.publish(suffix, payload)


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockPushSession:
    """In-memory session created by :class:`MockPushTransport`."""

    serial: str
    identity: str
    credential: str
    on_telemetry: TelemetryCallback
    on_connection: ConnectionCallback
    published: list[tuple[str, str]] = field(default_factory=list)
    is_connected: bool = True
    closed: bool = False

    async def deliver(self, suffix: str, value: str) -> None:
        """Simulate one inbound state message (decoded like the real one)."""
        snapshot = decode_push(suffix, value)
        if snapshot is not None:
            await self.on_telemetry(snapshot)

    async def drop(self) -> None:
        """Simulate an abnormal loss of the broker connection."""
        self.is_connected = False
        await self.on_connection(False)

    async def restore(self) -> None:
        """Simulate an automatic reconnect."""
        self.is_connected = True
        self.published.append((APP_STATUS, ONLINE))
        await self.on_connection(True)


@dataclass
class MockPushTransport:
    """Test double for :class:`PushPort`.

    Set ``fail_open`` / ``fail_publish`` to simulate broker trouble and
    ``open_gate`` to hold ``open()`` until the test releases it.
    ``retained`` messages are delivered inside ``open()``, before it
    returns, as the broker replays retained state on subscribe.
    """

    fail_open: bool = False
    fail_publish: bool = False
    open_gate: asyncio.Event | None = None
    retained: dict[str, str] = field(default_factory=dict)
    sessions: list[MockPushSession] = field(default_factory=list)
    open_attempts: list[str] = field(default_factory=list)

    async def open(
        self,
        serial: str,
        identity: str,
        credential: str,
        *,
        on_telemetry: TelemetryCallback,
        on_connection: ConnectionCallback,
    ) -> MockPushSession:
        """Record the attempt and return a connected session."""
        self.open_attempts.append(serial)
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.fail_open:
            msg = f"Simulated open failure for {serial}"
            raise TransportOpenError(msg)
        session = MockPushSession(
            serial=serial,
            identity=identity,
            credential=credential,
            on_telemetry=on_telemetry,
            on_connection=on_connection,
        )
        session.published.append((APP_STATUS, ONLINE))
        self.sessions.append(session)
        for suffix, value in self.retained.items():
            await session.deliver(suffix, value)
        return session

    async def close(self, session: PushSessionHandle) -> None:
        """Publish ``offline`` and mark the session closed."""
        assert isinstance(session, MockPushSession)
        if session.is_connected:
            session.published.append((APP_STATUS, OFFLINE))
        session.is_connected = False
        session.closed = True

    async def publish(
        self,
        session: PushSessionHandle,
        suffix: str,
        payload: str,
    ) -> None:
        """Record a publish, or raise when failing / disconnected."""
        assert isinstance(session, MockPushSession)
        if self.fail_publish or not session.is_connected:
            msg = f"Simulated publish failure on {suffix}"
            raise PublishError(msg)
        session.published.append((suffix, payload))

    @property
    def open_count(self) -> int:
        """Number of ``open()`` calls, successful or not."""
        return len(self.open_attempts)

    @property
    def last_session(self) -> MockPushSession | None:
        return self.sessions[-1] if self.sessions else None

    def commands(self) -> list[tuple[str, str]]:
        """All ``Set/...`` publishes across sessions."""
        return [
            entry
            for session in self.sessions
            for entry in session.published
            if entry[0].startswith("Set/")
        ]

"""Transport resilience engine: one live view of one selected device.

The engine owns the active-device session.  It decides which transport
is authoritative, watches for silent failures by timeout rather than by
disconnect events, routes commands to whichever channel works, and
republishes ``(snapshot, status)`` pairs to subscribers.

State machine (one instance per selected device)::

    IDLE ──select──▶ CONNECTING ──push open──▶ PUSH_ACTIVE ◀─┐
                        │                        │  ▲         │ probe failed
                        │ first tick / no        │  │ open    │ (last_error set)
                        │ credential             ▼  │         │
                        └──────────────▶ POLL_ACTIVE   PUSH_STALE
                                             │  ▲        │ probe ok
                                 poll failed │  └────────┘
                                 & no push   ▼
                                        DISCONNECTED ──poll ok──▶ POLL_ACTIVE

    any state ──deselect──▶ IDLE

Timers:

- **poll tick** (``poll_interval``, periodic) — polls unless on push;
  the first tick closes the grace window of a pending push open.
- **data timeout** (``data_timeout``, one-shot, re-armed on every push
  telemetry event) — on expiry performs exactly one poll probe.

Every timer callback and transport callback carries the session
generation it was armed in; callbacks from an older generation are
ignored so a stale firing can never corrupt a newer session.

Retry is fixed-period and unbounded: ``DISCONNECTED`` keeps polling on
every tick and reopens push on every :meth:`TransportEngine.resume`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from functools import partial
from typing import Self

from evselink._clock import ClockPort, SystemClock
from evselink._codec import ChargeMode, TelemetrySnapshot
from evselink._errors import (
    CONNECTION_LOST,
    CONNECTION_UNAVAILABLE,
    CommandError,
    DecodeError,
    NoDeviceSelectedError,
    PollError,
    PublishError,
    TransportError,
    TransportOpenError,
)
from evselink._poll import PollCommand, PollPort
from evselink._push import PushPort, PushSessionHandle
from evselink._registry import Device
from evselink._settings import EngineSettings
from evselink._topics import SET_CURRENT_OVERRIDE, SET_MODE

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


class FailoverState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    POLL_ACTIVE = "poll_active"
    PUSH_ACTIVE = "push_active"
    PUSH_STALE = "push_stale"
    DISCONNECTED = "disconnected"


class Transport(StrEnum):
    NONE = "none"
    POLL = "poll"
    PUSH = "push"


_PUSH_STATES = frozenset({FailoverState.PUSH_ACTIVE, FailoverState.PUSH_STALE})

_TRANSPORT_BY_STATE = {
    FailoverState.POLL_ACTIVE: Transport.POLL,
    FailoverState.PUSH_ACTIVE: Transport.PUSH,
    FailoverState.PUSH_STALE: Transport.PUSH,
}


@dataclass(frozen=True, slots=True)
class ConnectivityStatus:
    """Which transport is authoritative and what last went wrong."""

    active_transport: Transport = Transport.NONE
    push_session_live: bool = False
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class EngineUpdate:
    """One element of the engine's output stream."""

    snapshot: TelemetrySnapshot
    status: ConnectivityStatus
    state: FailoverState
    serial: str | None = None


UpdateCallback = Callable[[EngineUpdate], Awaitable[None]]
DeviceLookup = Callable[[str], Device | None]


class UpdateSubscription:
    """Unbounded queue of :class:`EngineUpdate` objects.

    Registered on creation, so no update emitted after
    :meth:`TransportEngine.subscribe` returns is missed.  Iterate with
    ``async for``; :meth:`close` unregisters.
    """

    def __init__(self, registry: list[asyncio.Queue[EngineUpdate]]) -> None:
        self._queue: asyncio.Queue[EngineUpdate] = asyncio.Queue()
        self._registry = registry
        self._closed = False
        registry.append(self._queue)

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> EngineUpdate:
        if self._closed:
            raise StopAsyncIteration
        return await self._queue.get()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def drain(self) -> list[EngineUpdate]:
        """Return every queued update without waiting."""
        items: list[EngineUpdate] = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(ValueError):
            self._registry.remove(self._queue)


# ---------------------------------------------------------------------------
# Timer
# ---------------------------------------------------------------------------


class _Timer:
    """Cancellable one-shot or periodic asyncio timer.

    A callback may re-arm or cancel its own timer; the running task is
    never cancelled from inside itself.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._task: asyncio.Task[None] | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(
        self,
        delay: float,
        callback: Callable[[], Awaitable[None]],
        *,
        periodic: bool = False,
    ) -> None:
        self.cancel()
        self._task = asyncio.create_task(
            self._run(delay, callback, periodic),
            name=f"evselink-{self._name}",
        )

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()

    async def stop(self) -> None:
        """Cancel and wait until the timer task has finished."""
        task = self._task
        self.cancel()
        if task is None or task is asyncio.current_task():
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(
        self,
        delay: float,
        callback: Callable[[], Awaitable[None]],
        periodic: bool,
    ) -> None:
        # Ticks fall due every *delay* on the loop clock, callback time
        # included; an overrunning callback makes the next tick due at once.
        loop = asyncio.get_running_loop()
        due = loop.time()
        while True:
            due = max(due + delay, loop.time())
            await asyncio.sleep(due - loop.time())
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Timer %s callback failed", self._name)
            if not periodic or self._task is not asyncio.current_task():
                return


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TransportEngine:
    """Failover orchestrator for the currently selected device.

    Args:
        push: Push transport port.
        poll: Poll transport port.
        identity: Stable application identity used for push sessions.
        settings: Timer configuration.
        clock: Monotonic clock for data-age measurement.
        lookup: Optional registry lookup used to refresh the selected
            device's address and credential on resume and on explicit
            push re-association.
    """

    def __init__(
        self,
        *,
        push: PushPort,
        poll: PollPort,
        identity: str,
        settings: EngineSettings | None = None,
        clock: ClockPort | None = None,
        lookup: DeviceLookup | None = None,
    ) -> None:
        self._push = push
        self._poll = poll
        self._identity = identity
        self._settings = settings or EngineSettings()
        self._clock = clock or SystemClock()
        self._lookup = lookup

        self._state = FailoverState.IDLE
        self._device: Device | None = None
        self._session: PushSessionHandle | None = None
        self._snapshot = TelemetrySnapshot()
        self._last_error: str | None = None
        self._last_data_at: float | None = None
        self._generation = 0
        self._paused = False

        self._poll_timer = _Timer("poll-tick")
        self._data_timer = _Timer("data-timeout")
        self._open_task: asyncio.Task[bool] | None = None
        self._lock = asyncio.Lock()

        self._queues: list[asyncio.Queue[EngineUpdate]] = []
        self._callbacks: list[UpdateCallback] = []

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.deselect()

    # -- Read-only properties -----------------------------------------------

    @property
    def state(self) -> FailoverState:
        return self._state

    @property
    def device(self) -> Device | None:
        return self._device

    @property
    def snapshot(self) -> TelemetrySnapshot:
        return self._snapshot

    @property
    def status(self) -> ConnectivityStatus:
        return ConnectivityStatus(
            active_transport=_TRANSPORT_BY_STATE.get(self._state, Transport.NONE),
            push_session_live=self._push_live,
            last_error=self._last_error,
        )

    @property
    def data_age(self) -> float | None:
        """Seconds since the last push telemetry event of this session."""
        if self._last_data_at is None:
            return None
        return self._clock.now() - self._last_data_at

    @property
    def _push_live(self) -> bool:
        return self._session is not None and self._session.is_connected

    @property
    def _open_pending(self) -> bool:
        return self._open_task is not None and not self._open_task.done()

    # -- Output stream ------------------------------------------------------

    def subscribe(self) -> UpdateSubscription:
        """Start receiving every subsequent :class:`EngineUpdate`."""
        return UpdateSubscription(self._queues)

    def on_update(self, callback: UpdateCallback) -> UpdateCallback:
        """Register an async callback for every update (decorator-friendly)."""
        self._callbacks.append(callback)
        return callback

    # -- Device lifecycle ---------------------------------------------------

    async def select(self, device: Device) -> None:
        """Make *device* the active device.

        Any previous session is fully torn down first.  Paired devices
        open push concurrently with the poll ticker; unpaired devices
        go straight to polling and never attempt a push open.
        """
        async with self._lock:
            await self._teardown()
            self._generation += 1
            self._device = device
            logger.info("Selected %s at %s", device.serial, device.address or "-")

            if device.is_paired:
                self._set_state(FailoverState.CONNECTING)
                await self._emit()
                self._start_push_open()
                self._arm_poll_timer()
                return

            self._set_state(FailoverState.POLL_ACTIVE)
            await self._emit()
            self._arm_poll_timer()
            await self._poll_once()

    async def deselect(self) -> None:
        """Tear down the active session and return to ``IDLE``."""
        async with self._lock:
            if self._device is None and self._state is FailoverState.IDLE:
                return
            await self._teardown()
            await self._emit()

    async def pause(self) -> None:
        """Stop the poll ticker while the application is in the background.

        The push session stays open.
        """
        if self._device is None:
            return
        self._paused = True
        await self._poll_timer.stop()

    async def resume(self) -> None:
        """Lifecycle resume: restart polling and reopen push if possible."""
        device = self._refresh_device()
        if device is None:
            return
        self._paused = False
        self._arm_poll_timer()
        if self._state not in _PUSH_STATES:
            await self._poll_once()
        if device.is_paired and not self._push_live and not self._open_pending:
            self._start_push_open()

    async def reconnect_push(self) -> bool:
        """Explicitly re-associate the selected device with push.

        Picks up a fresh credential via ``lookup``, replaces any current
        session and awaits the open.

        Raises:
            NoDeviceSelectedError: If no device is selected.

        Returns:
            ``True`` when the engine is now on push.
        """
        device = self._refresh_device()
        if device is None:
            msg = "Select a device first!"
            raise NoDeviceSelectedError(msg)
        if not device.is_paired:
            return False

        await self._cancel_open()
        if await self._open_push(self._generation):
            return True
        if self._state in _PUSH_STATES:
            self._data_timer.cancel()
            self._set_state(FailoverState.POLL_ACTIVE)
            await self._emit()
        return False

    # -- Commands -----------------------------------------------------------

    async def set_mode(self, mode: ChargeMode) -> Transport:
        """Change the charging mode; returns the transport that delivered it.

        Raises:
            NoDeviceSelectedError: If no device is selected.
            CommandError: If no transport accepted the command.
        """
        mode = ChargeMode(mode)
        return await self._dispatch(
            PollCommand.set_mode(mode),
            SET_MODE,
            mode.label,
            TelemetrySnapshot(mode=mode),
        )

    async def set_override_current(self, amps: float) -> Transport:
        """Set the override current in amps (0 clears the override).

        Raises:
            ValueError: If *amps* is negative.
            NoDeviceSelectedError: If no device is selected.
            CommandError: If no transport accepted the command.
        """
        if amps < 0:
            msg = f"Override current must not be negative, got {amps}"
            raise ValueError(msg)
        command = PollCommand.set_override_current(amps)
        deciamps = command.override_deciamps or 0
        return await self._dispatch(
            command,
            SET_CURRENT_OVERRIDE,
            str(deciamps),
            TelemetrySnapshot(override_current=deciamps / 10.0),
        )

    async def _dispatch(
        self,
        command: PollCommand,
        suffix: str,
        payload: str,
        optimistic: TelemetrySnapshot,
    ) -> Transport:
        device = self._device
        if device is None:
            msg = "Select a device first!"
            raise NoDeviceSelectedError(msg)
        generation = self._generation

        if self._state is FailoverState.PUSH_ACTIVE and self._push_live:
            await self._publish_command(suffix, payload, optimistic)
            return Transport.PUSH

        if device.address:
            try:
                await self._poll.send_command(device.address, command)
            except TransportError as exc:
                logger.warning("Poll command to %s failed: %s", device.serial, exc)
            else:
                if generation == self._generation:
                    await self._refresh_after_command()
                return Transport.POLL

        if self._push_live:
            await self._publish_command(suffix, payload, optimistic)
            return Transport.PUSH

        raise CommandError(CONNECTION_UNAVAILABLE)

    async def _publish_command(
        self,
        suffix: str,
        payload: str,
        optimistic: TelemetrySnapshot,
    ) -> None:
        assert self._session is not None
        try:
            await self._push.publish(self._session, suffix, payload)
        except PublishError as exc:
            msg = f"Failed to send {suffix} via push"
            raise CommandError(msg) from exc
        # Fire-and-forget: the next telemetry event corrects a rejected value.
        self._snapshot = self._snapshot.merge(optimistic)
        await self._emit()

    # -- Poll path ----------------------------------------------------------

    def _arm_poll_timer(self) -> None:
        if self._paused or self._device is None:
            return
        self._poll_timer.start(
            self._settings.poll_interval,
            partial(self._on_poll_tick, self._generation),
            periodic=True,
        )

    async def _on_poll_tick(self, generation: int) -> None:
        if generation != self._generation or self._state in _PUSH_STATES:
            return
        if self._state is FailoverState.CONNECTING:
            logger.info("Push not open within grace window, polling %s", self._serial)
            self._set_state(FailoverState.POLL_ACTIVE)
        await self._poll_once()

    async def _fetch(self) -> TelemetrySnapshot:
        device = self._device
        if device is None or not device.address:
            msg = "No network address for device"
            raise PollError(msg)
        return await self._poll.fetch_snapshot(device.address)

    async def _poll_once(self) -> None:
        generation = self._generation
        try:
            snapshot = await self._fetch()
        except (TransportError, DecodeError) as exc:
            if generation == self._generation:
                await self._on_poll_failure(exc)
            return
        if generation != self._generation or self._state in _PUSH_STATES:
            return

        self._snapshot = self._snapshot.merge(snapshot)
        self._last_error = None
        if self._state is not FailoverState.POLL_ACTIVE:
            logger.info("Poll transport usable for %s", self._serial)
            self._set_state(FailoverState.POLL_ACTIVE)
        await self._emit()

    async def _refresh_after_command(self) -> None:
        """Fetch once after a poll command; on push only the snapshot changes."""
        if self._state not in _PUSH_STATES:
            await self._poll_once()
            return
        generation = self._generation
        try:
            snapshot = await self._fetch()
        except (TransportError, DecodeError) as exc:
            logger.debug("Refresh of %s after command failed: %s", self._serial, exc)
            return
        if generation != self._generation:
            return
        self._snapshot = self._snapshot.merge(snapshot)
        await self._emit()

    async def _on_poll_failure(self, exc: Exception) -> None:
        if self._state in _PUSH_STATES:
            return
        logger.warning("Poll of %s failed: %s", self._serial, exc)

        if self._push_live:
            logger.info("Falling back to push for %s", self._serial)
            await self._enter_push_active()
            return

        device = self._device
        generation = self._generation
        if (
            device is not None
            and device.is_paired
            and self._state is not FailoverState.DISCONNECTED
            and not self._open_pending
        ):
            if await self._open_push(generation):
                return
            if generation != self._generation:
                return

        self._last_error = CONNECTION_UNAVAILABLE
        self._set_state(FailoverState.DISCONNECTED)
        await self._emit()

    # -- Push path ----------------------------------------------------------

    def _start_push_open(self) -> None:
        if self._open_pending:
            return
        self._open_task = asyncio.create_task(
            self._open_push(self._generation),
            name="evselink-push-open",
        )

    async def _open_push(self, generation: int) -> bool:
        device = self._device
        if device is None or not device.credential:
            return False
        await self._close_session()
        try:
            session = await self._push.open(
                device.serial,
                self._identity,
                device.credential,
                on_telemetry=partial(self._on_push_telemetry, generation),
                on_connection=partial(self._on_push_connection, generation),
            )
        except TransportOpenError as exc:
            if generation == self._generation:
                logger.warning("Push open for %s failed: %s", device.serial, exc)
            return False

        if generation != self._generation:
            await self._push.close(session)
            return False
        self._session = session
        await self._enter_push_active()
        return True

    async def _enter_push_active(self) -> None:
        if self._state is not FailoverState.PUSH_ACTIVE:
            logger.info("Push transport active for %s", self._serial)
        self._last_error = None
        self._set_state(FailoverState.PUSH_ACTIVE)
        self._arm_data_timer()
        await self._emit()

    def _arm_data_timer(self) -> None:
        self._data_timer.start(
            self._settings.data_timeout,
            partial(self._on_data_timeout, self._generation),
        )

    async def _on_push_telemetry(self, generation: int, update: TelemetrySnapshot) -> None:
        if generation != self._generation:
            return
        self._last_data_at = self._clock.now()
        if self._session is None:
            # Retained messages arrive before open() returns; _enter_push_active
            # emits them once the session is stored.
            self._snapshot = self._snapshot.merge(update)
            return
        if self._state not in _PUSH_STATES:
            # Session kept alive in the background while polling.
            return
        if self._state is FailoverState.PUSH_STALE:
            logger.info("Push telemetry resumed for %s", self._serial)
            self._set_state(FailoverState.PUSH_ACTIVE)
        self._last_error = None
        self._arm_data_timer()
        self._snapshot = self._snapshot.merge(update)
        await self._emit()

    async def _on_push_connection(self, generation: int, connected: bool) -> None:
        if generation != self._generation:
            return
        if connected:
            if self._session is None:
                # Still inside open(); _open_push handles the transition.
                return
            if self._state in _PUSH_STATES:
                await self._emit()
                return
            logger.info("Push session for %s reopened", self._serial)
            await self._enter_push_active()
            return

        logger.warning("Push session for %s lost", self._serial)
        if self._state in _PUSH_STATES:
            self._data_timer.cancel()
            self._set_state(FailoverState.POLL_ACTIVE)
        await self._emit()

    async def _on_data_timeout(self, generation: int) -> None:
        if generation != self._generation or self._state is not FailoverState.PUSH_ACTIVE:
            return
        logger.warning(
            "No push telemetry from %s for %.0fs, probing poll",
            self._serial,
            self._settings.data_timeout,
        )
        self._set_state(FailoverState.PUSH_STALE)
        await self._emit()

        try:
            snapshot = await self._fetch()
        except (TransportError, DecodeError) as exc:
            if generation != self._generation or self._state is not FailoverState.PUSH_STALE:
                return
            logger.warning("Poll probe of %s failed: %s", self._serial, exc)
            self._last_error = CONNECTION_LOST
            self._set_state(FailoverState.PUSH_ACTIVE)
            self._arm_data_timer()
            await self._emit()
            return

        if generation != self._generation or self._state is not FailoverState.PUSH_STALE:
            return
        self._snapshot = self._snapshot.merge(snapshot)
        self._last_error = None
        self._set_state(FailoverState.POLL_ACTIVE)
        await self._emit()

    # -- Teardown -----------------------------------------------------------

    async def _cancel_open(self) -> None:
        task, self._open_task = self._open_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            await self._push.close(session)
        except Exception:
            logger.warning("Closing push session for %s failed", session.serial, exc_info=True)

    async def _teardown(self) -> None:
        self._generation += 1
        await self._poll_timer.stop()
        await self._data_timer.stop()
        await self._cancel_open()
        await self._close_session()
        if self._device is not None:
            logger.info("Deselected %s", self._device.serial)
        self._device = None
        self._snapshot = TelemetrySnapshot()
        self._last_error = None
        self._last_data_at = None
        self._paused = False
        self._set_state(FailoverState.IDLE)

    # -- Helpers ------------------------------------------------------------

    @property
    def _serial(self) -> str:
        return self._device.serial if self._device is not None else "-"

    def _refresh_device(self) -> Device | None:
        if self._device is not None and self._lookup is not None:
            fresh = self._lookup(self._device.serial)
            if fresh is not None:
                self._device = fresh
        return self._device

    def _set_state(self, state: FailoverState) -> None:
        if state is not self._state:
            logger.debug(
                "%s -> %s",
                self._state,
                state,
                extra={
                    "serial": self._serial,
                    "state": state.value,
                    "transport": _TRANSPORT_BY_STATE.get(state, Transport.NONE).value,
                },
            )
            self._state = state

    async def _emit(self) -> None:
        update = EngineUpdate(
            snapshot=self._snapshot,
            status=self.status,
            state=self._state,
            serial=self._device.serial if self._device is not None else None,
        )
        for queue in list(self._queues):
            queue.put_nowait(update)
        for callback in list(self._callbacks):
            try:
                await callback(update)
            except Exception:
                logger.exception("Error in update callback")

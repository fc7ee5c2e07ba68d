"""Poll transport: one-shot HTTP requests against a device's LAN address.

Provides :class:`PollPort` (Protocol), the aiohttp-backed
:class:`PollTransport`, and :class:`MockPollTransport` for tests.

Endpoints (all on ``http://{address}/settings``)::

    GET                          → status document (fetch / probe)
    POST ?mode=<int>             → set charge mode, empty form body
    POST ?override_current=<dA>  → set override current in deciamps

Failures are raised as :class:`~evselink._errors.TransportError`
subclasses so the engine can fail over; :meth:`PollTransport.probe`
never raises: discovery only cares about "genuine device or not".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, Self, runtime_checkable

import aiohttp

from evselink._codec import (
    ChargeMode,
    TelemetrySnapshot,
    amps_to_deciamps,
    decode_poll,
    poll_serial,
)
from evselink._errors import (
    DecodeError,
    DiscoveryProbeError,
    PollError,
    TransportError,
    TransportTimeoutError,
)
from evselink._settings import PollSettings

logger = logging.getLogger(__name__)

_FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PollCommand:
    """A single settings change sent as query parameters."""

    mode: ChargeMode | None = None
    override_deciamps: int | None = None

    @classmethod
    def set_mode(cls, mode: ChargeMode) -> PollCommand:
        return cls(mode=mode)

    @classmethod
    def set_override_current(cls, amps: float) -> PollCommand:
        return cls(override_deciamps=amps_to_deciamps(amps))

    def params(self) -> dict[str, str]:
        """Query parameters for the POST request."""
        params: dict[str, str] = {}
        if self.mode is not None:
            params["mode"] = str(int(self.mode))
        if self.override_deciamps is not None:
            params["override_current"] = str(self.override_deciamps)
        return params


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """A confirmed device found at *address*."""

    serial: str
    address: str
    port: int = 80


# ---------------------------------------------------------------------------
# Port (Protocol)
# ---------------------------------------------------------------------------


@runtime_checkable
class PollPort(Protocol):
    """Port contract for the poll transport."""

    async def fetch_snapshot(self, address: str) -> TelemetrySnapshot: ...

    async def send_command(self, address: str, command: PollCommand) -> None: ...

    async def probe(self, address: str, timeout: float) -> ProbeResult | None: ...


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


@dataclass
class PollTransport:
    """aiohttp-backed poll transport.

    Pass an existing ``aiohttp.ClientSession`` to share connection pools;
    otherwise one is created on first use and closed by :meth:`close`.

    Usage::

        async with PollTransport() as poll:
            snapshot = await poll.fetch_snapshot("192.168.1.40")
    """

    settings: PollSettings = field(default_factory=PollSettings)
    session: aiohttp.ClientSession | None = None
    _owns_session: bool = field(default=False, init=False, repr=False)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the session if this transport created it."""
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None
            self._owns_session = False

    def _client(self) -> aiohttp.ClientSession:
        if self.session is None:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self.session

    @staticmethod
    def _url(address: str) -> str:
        return f"http://{address}/settings"

    # -- PollPort methods ---------------------------------------------------

    async def fetch_snapshot(self, address: str) -> TelemetrySnapshot:
        """Fetch and decode the status document.

        Raises:
            TransportTimeoutError: No answer within ``request_timeout``.
            PollError: Connection failure or non-200 status.
            DecodeError: Body is not a JSON object.
        """
        document = await self._get_document(address, self.settings.request_timeout)
        return decode_poll(document)

    async def send_command(self, address: str, command: PollCommand) -> None:
        """POST *command* as query parameters with an empty body.

        Raises:
            TransportTimeoutError: No answer within ``request_timeout``.
            PollError: Connection failure or non-200 status.
        """
        url = self._url(address)
        params = command.params()
        try:
            async with self._client().post(
                url,
                params=params,
                data="",
                headers=_FORM_HEADERS,
                timeout=aiohttp.ClientTimeout(total=self.settings.request_timeout),
            ) as response:
                if response.status != 200:
                    msg = f"POST {url} returned {response.status}"
                    raise PollError(msg, status=response.status)
        except TimeoutError as exc:
            msg = f"POST {url} timed out"
            raise TransportTimeoutError(msg) from exc
        except aiohttp.ClientError as exc:
            msg = f"POST {url} failed: {exc}"
            raise PollError(msg) from exc
        logger.debug("Sent %s to %s", params, address)

    async def probe(self, address: str, timeout: float) -> ProbeResult | None:
        """Return the device serial at *address*, or ``None``.

        Every failure (timeout, refused connection, wrong document shape,
        missing serial) yields ``None``.
        """
        try:
            return await self.identify(address, timeout)
        except (TransportError, DecodeError):
            return None
        except DiscoveryProbeError as exc:
            logger.debug("Discarding %s: %s", address, exc)
            return None

    async def identify(self, address: str, timeout: float) -> ProbeResult:
        """Fetch the status document at *address* and read its serial.

        Raises:
            DiscoveryProbeError: The responder is not a device.
            TransportError: The request failed.
            DecodeError: The body is not JSON.
        """
        document = await self._get_document(address, timeout)
        serial = poll_serial(document)
        if serial is None:
            msg = "not a device status document"
            raise DiscoveryProbeError(msg)
        return ProbeResult(serial=serial, address=address)

    # -- Internal -----------------------------------------------------------

    async def _get_document(self, address: str, timeout: float) -> Any:
        url = self._url(address)
        try:
            async with self._client().get(
                url,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                if response.status != 200:
                    msg = f"GET {url} returned {response.status}"
                    raise PollError(msg, status=response.status)
                try:
                    return await response.json(content_type=None)
                except ValueError as exc:
                    msg = f"GET {url} returned invalid JSON"
                    raise DecodeError(msg) from exc
        except TimeoutError as exc:
            msg = f"GET {url} timed out"
            raise TransportTimeoutError(msg) from exc
        except aiohttp.ClientError as exc:
            msg = f"GET {url} failed: {exc}"
            raise PollError(msg) from exc


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockPollTransport:
    """In-memory :class:`PollPort` double.

    ``documents`` maps addresses to status documents; addresses not in
    the map fail with :class:`PollError`.  Set ``fail`` to make every
    fetch and command fail regardless.
    """

    documents: dict[str, Any] = field(default_factory=dict)
    fail: bool = False
    fail_commands: bool = False
    fetches: list[str] = field(default_factory=list)
    commands: list[tuple[str, PollCommand]] = field(default_factory=list)
    probes: list[tuple[str, float]] = field(default_factory=list)

    async def fetch_snapshot(self, address: str) -> TelemetrySnapshot:
        self.fetches.append(address)
        return decode_poll(self._document(address))

    async def send_command(self, address: str, command: PollCommand) -> None:
        if self.fail_commands:
            msg = f"Simulated command failure at {address}"
            raise PollError(msg)
        self._document(address)
        self.commands.append((address, command))

    async def probe(self, address: str, timeout: float) -> ProbeResult | None:
        self.probes.append((address, timeout))
        document = self.documents.get(address)
        serial = poll_serial(document)
        if serial is None:
            return None
        return ProbeResult(serial=serial, address=address)

    def _document(self, address: str) -> Any:
        if self.fail or address not in self.documents:
            msg = f"Simulated poll failure at {address}"
            raise PollError(msg)
        return self.documents[address]

    @property
    def fetch_count(self) -> int:
        return len(self.fetches)

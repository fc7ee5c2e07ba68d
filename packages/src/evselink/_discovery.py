"""Two-phase, time-boxed discovery of devices on the local network.

Phase 1 — announcement listening
    Browse multicast service announcements for ``listen_duration``
    seconds, keep names starting with the product prefix, dedupe by
    address, cap the candidate count, then probe each candidate for its
    canonical serial.  Announced names are never trusted as serials.

Phase 2 — subnet probing
    Only when phase 1 confirmed nothing.  Derive the host's ``/24``,
    probe ``.1`` to ``.254`` exactly once each in batches of
    ``batch_size`` concurrent requests, joining every batch before the
    next one starts, and report ``(scanned, total)`` after each batch.

Both phases dedupe by serial and stop accepting devices at
``max_devices``.  Probe failures are never surfaced individually.

:meth:`DiscoveryEngine.scan` is a lazy async generator; each call starts
a fresh scan with progress counting from zero.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol, runtime_checkable

from evselink._poll import PollPort, ProbeResult
from evselink._settings import DiscoverySettings

logger = logging.getLogger(__name__)

_RESOLVE_TIMEOUT_MS = 3000

# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class ScanPhase(StrEnum):
    ANNOUNCEMENT = "announcement"
    SUBNET = "subnet"


@dataclass(frozen=True, slots=True)
class ScanProgress:
    """Subnet sweep progress after one joined batch."""

    phase: ScanPhase
    scanned: int
    total: int


@dataclass(frozen=True, slots=True)
class ScanComplete:
    """Final event of a scan; ``devices`` is empty when nothing was found."""

    phase: ScanPhase
    devices: tuple[ProbeResult, ...]


DiscoveryEvent = ScanProgress | ScanComplete

# ---------------------------------------------------------------------------
# Announcement source
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Announcement:
    """One announced service instance."""

    name: str
    addresses: tuple[str, ...]


@runtime_checkable
class AnnouncementSource(Protocol):
    """Collects service announcements for a fixed window."""

    async def collect(self, service_type: str, duration: float) -> list[Announcement]: ...


class ZeroconfAnnouncementSource:
    """mDNS browser backed by *zeroconf*'s asyncio API."""

    async def collect(self, service_type: str, duration: float) -> list[Announcement]:
        """Browse *service_type* for *duration* seconds."""
        from zeroconf import IPVersion, ServiceStateChange  # noqa: PLC0415
        from zeroconf.asyncio import (  # noqa: PLC0415
            AsyncServiceBrowser,
            AsyncServiceInfo,
            AsyncZeroconf,
        )

        found: list[Announcement] = []
        pending: set[asyncio.Task[None]] = set()

        async def resolve(zc: object, kind: str, name: str) -> None:
            info = AsyncServiceInfo(kind, name)
            if await info.async_request(zc, _RESOLVE_TIMEOUT_MS):
                addresses = tuple(info.parsed_addresses(IPVersion.V4Only))
                found.append(Announcement(name=name, addresses=addresses))

        def on_service_state_change(
            zeroconf: object,
            service_type: str,
            name: str,
            state_change: ServiceStateChange,
        ) -> None:
            if state_change is not ServiceStateChange.Added:
                return
            task = asyncio.ensure_future(resolve(zeroconf, service_type, name))
            pending.add(task)
            task.add_done_callback(pending.discard)

        aiozc = AsyncZeroconf(ip_version=IPVersion.V4Only)
        browser = AsyncServiceBrowser(
            aiozc.zeroconf,
            [service_type],
            handlers=[on_service_state_change],
        )
        try:
            await asyncio.sleep(duration)
        finally:
            await browser.async_cancel()
            for task in list(pending):
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            await aiozc.async_close()
        return found


def local_ipv4() -> str | None:
    """The host's outward-facing IPv4 address, or ``None``.

    Connecting a UDP socket sends no packets; it only selects a route.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.connect(("10.255.255.255", 1))
            return str(sock.getsockname()[0])
        except OSError:
            return None


def subnet_hosts(address: str) -> list[str]:
    """All host addresses of the ``/24`` containing *address*.

    Raises:
        ValueError: If *address* is not an IPv4 address.
    """
    network = ipaddress.IPv4Network(f"{ipaddress.IPv4Address(address)}/24", strict=False)
    return [str(host) for host in network.hosts()]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass
class DiscoveryEngine:
    """Runs the announcement phase, then the subnet sweep if needed."""

    poll: PollPort
    settings: DiscoverySettings = field(default_factory=DiscoverySettings)
    announcements: AnnouncementSource = field(default_factory=ZeroconfAnnouncementSource)
    local_address: Callable[[], str | None] = local_ipv4

    async def discover(
        self,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> list[ProbeResult]:
        """Run a full scan and return the confirmed devices."""
        async for event in self.scan():
            if isinstance(event, ScanProgress):
                if on_progress is not None:
                    on_progress(event.scanned, event.total)
            else:
                return list(event.devices)
        return []

    async def scan(self) -> AsyncIterator[DiscoveryEvent]:
        """Yield subnet progress events, then exactly one :class:`ScanComplete`."""
        confirmed = await self._announcement_phase()
        if confirmed:
            logger.info("Announcement discovery found %d device(s)", len(confirmed))
            yield ScanComplete(phase=ScanPhase.ANNOUNCEMENT, devices=tuple(confirmed))
            return

        found: list[ProbeResult] = []
        async for progress in self._subnet_phase(found):
            yield progress
        logger.info("Subnet scan found %d device(s)", len(found))
        yield ScanComplete(phase=ScanPhase.SUBNET, devices=tuple(found))

    # -- Phases -------------------------------------------------------------

    async def _announcement_phase(self) -> list[ProbeResult]:
        try:
            announcements = await self.announcements.collect(
                self.settings.service_type,
                self.settings.listen_duration,
            )
        except Exception:
            logger.warning("Announcement listening failed", exc_info=True)
            announcements = []

        prefix = self.settings.name_prefix.lower()
        candidates: list[str] = []
        for announcement in announcements:
            if not announcement.name.lower().startswith(prefix):
                continue
            if not announcement.addresses:
                continue
            address = announcement.addresses[0]
            if address in candidates or len(candidates) >= self.settings.max_devices:
                continue
            candidates.append(address)

        confirmed: list[ProbeResult] = []
        for address in candidates:
            result = await self.poll.probe(address, self.settings.announce_probe_timeout)
            if result is not None:
                self._accept(result, confirmed)
        return confirmed

    async def _subnet_phase(self, found: list[ProbeResult]) -> AsyncIterator[ScanProgress]:
        host = self.local_address()
        if not host:
            logger.warning("Subnet scan: could not determine local address")
            return
        try:
            hosts = subnet_hosts(host)
        except ValueError:
            logger.warning("Subnet scan: invalid local address %r", host)
            return

        logger.debug("Subnet scan: probing %d addresses around %s", len(hosts), host)
        total = len(hosts)
        size = self.settings.batch_size
        for start in range(0, total, size):
            batch = hosts[start : start + size]
            results = await asyncio.gather(
                *(self.poll.probe(address, self.settings.probe_timeout) for address in batch),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, ProbeResult):
                    self._accept(result, found)
                elif isinstance(result, BaseException):
                    logger.debug("Probe raised %r", result)
            yield ScanProgress(phase=ScanPhase.SUBNET, scanned=start + len(batch), total=total)

    def _accept(self, result: ProbeResult, found: list[ProbeResult]) -> None:
        if len(found) >= self.settings.max_devices:
            return
        if any(existing.serial == result.serial for existing in found):
            return
        logger.debug("Confirmed %s at %s", result.serial, result.address)
        found.append(result)

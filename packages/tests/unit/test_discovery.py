"""Unit tests for evselink._discovery — two-phase device discovery.

Test Techniques Used:
    - Specification-based Testing: phase ordering, prefix filter, progress events
    - Property-based Reasoning: dedupe by serial, cap at max_devices,
      every subnet host probed exactly once, batch bound respected
    - Boundary Value Analysis: ninth device, empty network
    - Test Doubles: FakeAnnouncementSource, scripted poll probe
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest

from evselink._discovery import (
    DiscoveryEngine,
    ScanComplete,
    ScanPhase,
    ScanProgress,
    subnet_hosts,
)
from evselink._poll import MockPollTransport, ProbeResult
from evselink._settings import DiscoverySettings
from evselink.testing import FakeAnnouncementSource, status_document


@dataclass
class CountingProbe(MockPollTransport):
    """Mock poll that tracks probe concurrency."""

    in_flight: int = 0
    max_in_flight: int = 0

    async def probe(self, address: str, timeout: float) -> ProbeResult | None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            return await super().probe(address, timeout)
        finally:
            self.in_flight -= 1


def _engine(
    poll: MockPollTransport,
    announcements: FakeAnnouncementSource,
    **settings: object,
) -> DiscoveryEngine:
    return DiscoveryEngine(
        poll=poll,
        settings=DiscoverySettings(**settings),  # type: ignore[arg-type]
        announcements=announcements,
        local_address=lambda: "192.168.1.77",
    )


async def _events(engine: DiscoveryEngine) -> list[ScanProgress | ScanComplete]:
    return [event async for event in engine.scan()]


class TestSubnetHosts:
    """Technique: Boundary Value Analysis."""

    def test_slash_24_hosts(self) -> None:
        hosts = subnet_hosts("10.1.2.3")
        assert len(hosts) == 254
        assert hosts[0] == "10.1.2.1"
        assert hosts[-1] == "10.1.2.254"

    def test_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            subnet_hosts("not-an-ip")


class TestAnnouncementPhase:
    """Technique: Specification-based Testing."""

    async def test_confirmed_announcement_skips_subnet(
        self,
        fake_announcements: FakeAnnouncementSource,
    ) -> None:
        fake_announcements.announce("SmartEVSE-12345._http._tcp.local.", "192.168.1.40")
        poll = MockPollTransport(documents={"192.168.1.40": status_document("12345")})

        events = await _events(_engine(poll, fake_announcements))

        assert events == [
            ScanComplete(ScanPhase.ANNOUNCEMENT, (ProbeResult("12345", "192.168.1.40"),)),
        ]
        assert poll.probes == [("192.168.1.40", 3.0)]

    async def test_serial_comes_from_probe_not_name(
        self,
        fake_announcements: FakeAnnouncementSource,
    ) -> None:
        fake_announcements.announce("smartevse-renamed", "192.168.1.40")
        poll = MockPollTransport(documents={"192.168.1.40": status_document("777")})

        found = await _engine(poll, fake_announcements).discover()

        assert [d.serial for d in found] == ["777"]

    async def test_other_services_ignored(
        self,
        fake_announcements: FakeAnnouncementSource,
    ) -> None:
        fake_announcements.announce("printer-1", "192.168.1.9")
        fake_announcements.announce("SmartEVSE-1", "192.168.1.40")
        poll = MockPollTransport(documents={"192.168.1.40": status_document("1")})

        await _engine(poll, fake_announcements).discover()

        assert [address for address, _ in poll.probes] == ["192.168.1.40"]

    async def test_duplicate_addresses_probed_once(
        self,
        fake_announcements: FakeAnnouncementSource,
    ) -> None:
        fake_announcements.announce("smartevse-a", "192.168.1.40")
        fake_announcements.announce("smartevse-b", "192.168.1.40")
        poll = MockPollTransport(documents={"192.168.1.40": status_document("1")})

        await _engine(poll, fake_announcements).discover()

        assert len(poll.probes) == 1

    async def test_same_serial_at_two_addresses_reported_once(
        self,
        fake_announcements: FakeAnnouncementSource,
    ) -> None:
        fake_announcements.announce("smartevse-a", "192.168.1.40")
        fake_announcements.announce("smartevse-b", "192.168.1.41")
        poll = MockPollTransport(
            documents={
                "192.168.1.40": status_document("1"),
                "192.168.1.41": status_document("1"),
            },
        )

        found = await _engine(poll, fake_announcements).discover()

        assert found == [ProbeResult("1", "192.168.1.40")]

    async def test_listen_window_and_service_type(
        self,
        fake_announcements: FakeAnnouncementSource,
    ) -> None:
        await _engine(MockPollTransport(), fake_announcements).discover()
        assert fake_announcements.calls[0] == ("_http._tcp.local.", 5.0)

    async def test_listener_failure_falls_through_to_subnet(
        self,
        fake_announcements: FakeAnnouncementSource,
    ) -> None:
        fake_announcements.error = OSError("multicast unavailable")
        poll = MockPollTransport(documents={"192.168.1.50": status_document("9")})

        events = await _events(_engine(poll, fake_announcements))

        assert events[-1] == ScanComplete(ScanPhase.SUBNET, (ProbeResult("9", "192.168.1.50"),))


class TestSubnetPhase:
    """Technique: Property-based Reasoning."""

    async def test_every_host_probed_exactly_once(
        self,
        fake_announcements: FakeAnnouncementSource,
    ) -> None:
        poll = MockPollTransport()
        await _engine(poll, fake_announcements).discover()

        addresses = [address for address, _ in poll.probes]
        assert sorted(addresses) == sorted(f"192.168.1.{i}" for i in range(1, 255))
        assert all(timeout == 2.0 for _, timeout in poll.probes)

    async def test_progress_after_each_batch(
        self,
        fake_announcements: FakeAnnouncementSource,
    ) -> None:
        events = await _events(_engine(MockPollTransport(), fake_announcements))

        progress = [(e.scanned, e.total) for e in events if isinstance(e, ScanProgress)]
        assert progress == [(50, 254), (100, 254), (150, 254), (200, 254), (250, 254), (254, 254)]
        assert events[-1] == ScanComplete(ScanPhase.SUBNET, ())

    async def test_batch_concurrency_bounded(
        self,
        fake_announcements: FakeAnnouncementSource,
    ) -> None:
        poll = CountingProbe()
        await _engine(poll, fake_announcements, batch_size=20).discover()
        assert 1 < poll.max_in_flight <= 20

    async def test_caps_at_max_devices(
        self,
        fake_announcements: FakeAnnouncementSource,
    ) -> None:
        documents = {f"192.168.1.{i}": status_document(str(i)) for i in range(1, 21)}
        found = await _engine(MockPollTransport(documents=documents), fake_announcements).discover()

        assert len(found) == 8
        assert len({d.serial for d in found}) == 8

    async def test_on_progress_callback(
        self,
        fake_announcements: FakeAnnouncementSource,
    ) -> None:
        calls: list[tuple[int, int]] = []
        await _engine(MockPollTransport(), fake_announcements).discover(
            lambda scanned, total: calls.append((scanned, total)),
        )
        assert calls[-1] == (254, 254)

    async def test_restart_counts_from_zero(
        self,
        fake_announcements: FakeAnnouncementSource,
    ) -> None:
        engine = _engine(MockPollTransport(), fake_announcements)
        first = await _events(engine)
        second = await _events(engine)

        assert first == second
        assert isinstance(second[0], ScanProgress)
        assert second[0].scanned == 50

    async def test_unknown_local_address_completes_empty(
        self,
        fake_announcements: FakeAnnouncementSource,
    ) -> None:
        poll = MockPollTransport()
        engine = DiscoveryEngine(
            poll=poll,
            announcements=fake_announcements,
            local_address=lambda: None,
        )

        events = await _events(engine)

        assert events == [ScanComplete(ScanPhase.SUBNET, ())]
        assert poll.probes == []

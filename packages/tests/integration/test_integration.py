"""Integration tests: discovery, pairing and failover wired together.

Runs the engine end to end over the in-memory transports with short
real timers, the way an embedding application would drive it.

Test Techniques Used:
    - Integration Testing: discovery → registry → engine → commands
    - Scenario Testing: broker silence, LAN loss, recovery
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from evselink import (
    CONNECTION_LOST,
    ChargeMode,
    DeviceRegistry,
    DiscoveryEngine,
    EngineSettings,
    FailoverState,
    Transport,
    TransportEngine,
)
from evselink._topics import SET_MODE
from evselink.testing import (
    FakeAnnouncementSource,
    MockPollTransport,
    MockPushTransport,
    status_document,
)

pytestmark = pytest.mark.integration

ADDRESS = "192.168.1.40"
TICK = 0.04


async def _until(condition: Callable[[], bool], timeout: float = 3.0) -> None:
    async with asyncio.timeout(timeout):
        while not condition():
            await asyncio.sleep(0.005)


@pytest.fixture
def lan() -> MockPollTransport:
    return MockPollTransport(documents={ADDRESS: status_document("12345")})


async def test_discover_pair_and_monitor(lan: MockPollTransport) -> None:
    """Unpaired device found on LAN is polled, then upgraded to push after pairing."""
    announcements = FakeAnnouncementSource()
    announcements.announce("SmartEVSE-12345._http._tcp.local.", ADDRESS)
    registry = DeviceRegistry()
    push = MockPushTransport()

    found = await DiscoveryEngine(poll=lan, announcements=announcements).discover()
    registry.merge_discovered(found)

    engine = TransportEngine(
        push=push,
        poll=lan,
        identity="app-uuid",
        settings=EngineSettings(poll_interval=TICK, data_timeout=TICK * 5),
        lookup=registry.get,
    )
    with engine.subscribe() as updates:
        await engine.select(registry.get("12345"))
        assert engine.state is FailoverState.POLL_ACTIVE
        assert push.open_count == 0

        registry.apply_credential("12345", "token-from-pairing")
        assert await engine.reconnect_push()
        await push.last_session.deliver("ChargeCurrent", "100")

        assert engine.status.active_transport is Transport.PUSH
        assert engine.snapshot.charge_current == 10.0
        states = [u.state for u in updates.drain()]

    assert states[0] is FailoverState.POLL_ACTIVE
    assert states[-1] is FailoverState.PUSH_ACTIVE
    await engine.deselect()


async def test_silent_broker_then_lan_loss(lan: MockPollTransport) -> None:
    """Silent push session hands over to LAN; LAN loss hands back to push."""
    push = MockPushTransport()
    registry = DeviceRegistry()
    registry.merge_discovered(await DiscoveryEngine(poll=lan, announcements=_announcing()).discover())
    registry.apply_credential("12345", "tok")

    engine = TransportEngine(
        push=push,
        poll=lan,
        identity="app-uuid",
        settings=EngineSettings(poll_interval=TICK * 3, data_timeout=TICK),
    )
    await engine.select(registry.get("12345"))
    await _until(lambda: engine.state is FailoverState.POLL_ACTIVE)
    assert engine.snapshot.charge_current == 16.0

    lan.fail = True
    await _until(lambda: engine.state is FailoverState.PUSH_ACTIVE)
    await _until(lambda: engine.status.last_error == CONNECTION_LOST)

    used = await engine.set_mode(ChargeMode.SOLAR)
    assert used is Transport.PUSH
    assert push.commands() == [(SET_MODE, "Solar")]

    lan.fail = False
    await _until(lambda: engine.state is FailoverState.POLL_ACTIVE)
    assert engine.status.last_error is None
    await engine.deselect()
    assert push.last_session.closed


def _announcing() -> FakeAnnouncementSource:
    source = FakeAnnouncementSource()
    source.announce("smartevse-12345", ADDRESS)
    return source

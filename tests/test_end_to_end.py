"""Station and remote talking through an in-memory relay."""

import asyncio

from conftest import FakeEngine, FakeRegistry, RelayHub, abc_grant, make_settings, wait_until

from booth.pairing import PairingCoordinator
from booth.remote import RemoteCoordinator, RemotePhase
from booth.state import ConnectionState


def build_pair(engine: FakeEngine):
    hub = RelayHub()
    settings = make_settings()
    station = PairingCoordinator(
        settings=settings,
        registry=FakeRegistry(grants=[abc_grant()]),
        relay=hub.endpoint(),
        engine=engine,
        render_qr=False,
    )
    remote = RemoteCoordinator(settings=settings, relay=hub.endpoint())
    return hub, station, remote


def test_remote_triggers_capture_and_receives_image() -> None:
    engine = FakeEngine()

    async def scenario():
        hub, station, remote = build_pair(engine)
        await station.start_session()
        assert await remote.open(station.session.pairing_url) is True
        await wait_until(lambda: station.connection_state is ConnectionState.CONNECTED)
        assert engine.is_active

        assert await remote.request_capture() is True
        result = await remote.wait_for_result(2.0)
        await station.sequencer.wait_idle()
        count = station.session.capture_count
        await remote.close()
        await wait_until(lambda: station.connection_state is ConnectionState.NO_REMOTE)
        active = engine.is_active
        await station.stop()
        return result, count, active

    result, count, active = asyncio.run(scenario())
    assert result.kind == "image"
    assert result.image.mime_type == "image/jpeg"
    assert count == 1
    assert active is False


def test_rapid_requests_yield_one_image() -> None:
    engine = FakeEngine()

    async def scenario():
        hub, station, remote = build_pair(engine)
        await station.start_session()
        await remote.open("abc123")
        await wait_until(lambda: station.connection_state is ConnectionState.CONNECTED)
        for _ in range(3):
            await remote.request_capture()
        first = await remote.wait_for_result(2.0)
        second = await remote.wait_for_result(0.2)
        count = station.session.capture_count
        await station.stop()
        return first, second, count

    first, second, count = asyncio.run(scenario())
    assert first.kind == "image"
    assert second is None
    assert count == 1


def test_device_failure_reaches_remote() -> None:
    engine = FakeEngine(capture_failures=2)

    async def scenario():
        hub, station, remote = build_pair(engine)
        await station.start_session()
        await remote.open("abc123")
        await wait_until(lambda: station.connection_state is ConnectionState.CONNECTED)
        await remote.request_capture()
        result = await remote.wait_for_result(2.0)
        count = station.session.capture_count
        await station.stop()
        return result, remote.phase, count

    result, phase, count = asyncio.run(scenario())
    assert result.kind == "device_error"
    assert phase is RemotePhase.CONNECTED
    assert count == 0


def test_remote_ending_session_renews_station() -> None:
    engine = FakeEngine()

    async def scenario():
        hub, station, remote = build_pair(engine)
        await station.start_session()
        await remote.open("abc123")
        await wait_until(lambda: station.connection_state is ConnectionState.CONNECTED)
        await remote.end_session()
        await wait_until(lambda: station.session is not None and station.session.session_id != "abc123")
        result = (remote.phase, station.connection_state, station.session.session_id, engine.is_active)
        await station.stop()
        return result

    phase, connection, session_id, active = asyncio.run(scenario())
    assert phase is RemotePhase.ENDED
    assert connection is ConnectionState.NO_REMOTE
    assert session_id != "abc123"
    assert active is False

import asyncio
from unittest.mock import AsyncMock

import aiosqlite
import pytest

from conftest import DEVICE
from database import get_db
from errors import (
    CommandTimeout, ConcurrencyLimitExceeded, DeviceOffline, GatewayError, PortUnavailable,
    QuotaExhausted, SessionNotOwned,
)
from models.port import PortKey, PortState, RelayState
from models.session import ChargingSession, CloseReason, ControlAction, SessionPhase
from models.subscription import ExtensionType
from services import extension_service, port_monitor, quota_service, repository
from services.session_controller import SessionController

PORT_1 = PortKey(DEVICE, 1)
PORT_2 = PortKey(DEVICE, 2)


async def state_for(user_id, key):
    view = await port_monitor.get_port_view(user_id, key)
    return view.state


@pytest.mark.asyncio
async def test_acquire_turns_port_on_and_owns_it(env):
    session = await env.controller.acquire("alice", PORT_1)

    assert session.id is not None
    assert session.station_id == 1
    assert session.device_session_ref
    assert env.gateway.relay(DEVICE, 1) == RelayState.ON
    assert await state_for("alice", PORT_1) == PortState.OWNED_BY_CALLER
    assert await state_for("bob", PORT_1) == PortState.OCCUPIED_BY_OTHER

    async with get_db() as db:
        claim = await repository.get_claim(db, PORT_1)
        active = await repository.active_sessions_for_user(db, "alice")
    assert claim["phase"] == SessionPhase.ACTIVE.value
    assert claim["session_id"] == session.id
    assert [ref.session_id for ref in active] == [session.id]


@pytest.mark.asyncio
async def test_simultaneous_acquire_has_exactly_one_winner(env):
    env.gateway.ack_delay = 0.05
    results = await asyncio.gather(
        env.controller.acquire("alice", PORT_1),
        env.controller.acquire("bob", PORT_1),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, ChargingSession)]
    losers = [r for r in results if isinstance(r, PortUnavailable)]
    assert len(winners) == 1
    assert len(losers) == 1
    # the loser never reached the device
    on_commands = [c for c in env.gateway.commands if c[1] == ControlAction.ON]
    assert len(on_commands) == 1

    async with get_db() as db:
        open_sessions = await repository.list_open_sessions(db)
    assert len(open_sessions) == 1


@pytest.mark.asyncio
async def test_reacquiring_own_port_is_refused(env):
    await env.controller.acquire("alice", PORT_1)
    with pytest.raises(PortUnavailable):
        await env.controller.acquire("alice", PORT_1)


@pytest.mark.asyncio
async def test_concurrency_limit(env):
    await env.controller.acquire("alice", PORT_1)
    with pytest.raises(ConcurrencyLimitExceeded) as exc:
        await env.controller.acquire("alice", PORT_2)
    assert exc.value.details == {"limit": 1, "active": 1}
    assert env.gateway.relay(DEVICE, 2) == RelayState.OFF


@pytest.mark.asyncio
async def test_plan_with_two_concurrent_ports(env):
    await env.controller.acquire("carol", PORT_1)
    await env.controller.acquire("carol", PORT_2)
    assert await state_for("carol", PORT_2) == PortState.OWNED_BY_CALLER


@pytest.mark.asyncio
async def test_same_user_racing_from_two_tabs(env):
    env.gateway.ack_delay = 0.05
    results = await asyncio.gather(
        env.controller.acquire("alice", PORT_1),
        env.controller.acquire("alice", PORT_2),
        return_exceptions=True,
    )
    assert sum(isinstance(r, ChargingSession) for r in results) == 1
    assert sum(isinstance(r, ConcurrencyLimitExceeded) for r in results) == 1


@pytest.mark.asyncio
async def test_quota_exhausted_until_extension_is_bought(env):
    async with get_db() as db:
        await quota_service.record_consumption(db, "alice", 2000)

    with pytest.raises(QuotaExhausted) as exc:
        await env.controller.acquire("alice", PORT_1)
    detail = exc.value.to_dict()
    assert detail["remaining"] == 0
    assert detail["daily_limit"] == 2000
    assert "suggestion" in detail
    assert env.gateway.commands == []

    result = await extension_service.request_extension("alice", ExtensionType.DIRECT_PURCHASE)
    assert result.remaining_mah == 1000

    session = await env.controller.acquire("alice", PORT_1)
    assert session.user_id == "alice"


@pytest.mark.asyncio
async def test_ack_timeout_rolls_back_to_idle(env):
    env.gateway.ack_delay = 1.0  # controller waits 0.2s

    with pytest.raises(CommandTimeout):
        await env.controller.acquire("alice", PORT_1)

    async with get_db() as db:
        assert await repository.get_claim(db, PORT_1) is None
        assert await repository.get_open_session(db, PORT_1) is None
    assert await state_for("alice", PORT_1) == PortState.AVAILABLE

    env.gateway.ack_delay = 0
    session = await env.controller.acquire("alice", PORT_1)
    assert session.id is not None


@pytest.mark.asyncio
async def test_rejected_command_releases_claim(env):
    env.gateway.refuse.add(PORT_1)
    with pytest.raises(PortUnavailable):
        await env.controller.acquire("alice", PORT_1)
    async with get_db() as db:
        assert await repository.get_claim(db, PORT_1) is None


@pytest.mark.asyncio
async def test_offline_and_silent_devices(env):
    env.gateway.set_online(DEVICE, 1, False)
    with pytest.raises(DeviceOffline):
        await env.controller.acquire("alice", PORT_1)

    env.gateway.silence(DEVICE, 2, 120)
    await env.monitor.refresh_status()
    with pytest.raises(DeviceOffline):
        await env.controller.acquire("alice", PORT_2)
    assert env.gateway.commands == []


@pytest.mark.asyncio
async def test_unknown_port(env):
    with pytest.raises(PortUnavailable):
        await env.controller.acquire("alice", PortKey("NO_SUCH_DEVICE", 1))


@pytest.mark.asyncio
async def test_release_closes_session_with_cost(env):
    session = await env.controller.acquire("alice", PORT_1)
    async with get_db() as db:
        await repository.add_session_energy(db, session.id, 1000, session.start_time)

    result = await env.controller.release("alice", PORT_1)

    assert result.forced is False
    assert result.session.end_time is not None
    assert result.session.close_reason == CloseReason.RELEASED
    assert result.session.energy_mah == 1000
    assert result.session.cost == 250.0  # 0.25 per mAh
    assert env.gateway.relay(DEVICE, 1) == RelayState.OFF
    assert await state_for("alice", PORT_1) == PortState.AVAILABLE
    assert await state_for("bob", PORT_1) == PortState.AVAILABLE


@pytest.mark.asyncio
async def test_only_owner_can_release(env):
    await env.controller.acquire("alice", PORT_1)
    with pytest.raises(SessionNotOwned):
        await env.controller.release("bob", PORT_1)
    with pytest.raises(PortUnavailable):
        await env.controller.release("bob", PORT_2)


@pytest.mark.asyncio
async def test_unacknowledged_release_is_forced_and_reconciled(env):
    session = await env.controller.acquire("alice", PORT_1)
    env.gateway.ack_delay = 1.0

    result = await env.controller.release("alice", PORT_1)

    assert result.forced is True
    assert result.session.close_reason == CloseReason.FORCED_TIMEOUT
    assert result.session.needs_reconciliation is True
    view = await port_monitor.get_port_view("alice", PORT_1)
    assert view.needs_recheck is True
    assert view.session_id is None

    # a new owner can take the port straight away
    async with get_db() as db:
        assert await repository.get_claim(db, PORT_1) is None

    env.gateway.ack_delay = 0
    assert await env.controller.reconcile(result.session) is True
    async with get_db() as db:
        assert await repository.sessions_needing_reconciliation(db) == []
    assert PORT_1 not in env.monitor.recheck
    assert env.gateway.relay(DEVICE, 1) == RelayState.OFF
    assert session.id == result.session.id


@pytest.mark.asyncio
async def test_force_stop_skips_closed_sessions(env):
    session = await env.controller.acquire("alice", PORT_1)
    await env.controller.release("alice", PORT_1)
    assert await env.controller.force_stop(session.id, CloseReason.INACTIVITY) is None


@pytest.mark.asyncio
async def test_gateway_on_is_idempotent_for_the_owner(env):
    first = await env.gateway.send_control_command(DEVICE, 1, ControlAction.ON, "alice")
    again = await env.gateway.send_control_command(DEVICE, 1, ControlAction.ON, "alice")
    other = await env.gateway.send_control_command(DEVICE, 1, ControlAction.ON, "bob")

    assert first.accepted and again.accepted
    assert again.device_session_ref == first.device_session_ref
    assert other.accepted is False


@pytest.mark.asyncio
async def test_owner_still_sees_port_when_device_goes_quiet(env):
    await env.controller.acquire("alice", PORT_1)
    env.gateway.silence(DEVICE, 1, 120)
    await env.monitor.refresh_status()

    assert await state_for("alice", PORT_1) == PortState.OWNED_BY_CALLER
    assert await state_for("bob", PORT_1) == PortState.OFFLINE


@pytest.mark.asyncio
async def test_unreachable_gateway_maps_to_device_offline(env):
    gateway = AsyncMock()
    gateway.send_control_command.side_effect = GatewayError("connection refused")
    controller = SessionController(gateway=gateway, ack_timeout=0.2)

    with pytest.raises(DeviceOffline):
        await controller.acquire("alice", PORT_1)
    async with get_db() as db:
        assert await repository.get_claim(db, PORT_1) is None


@pytest.mark.asyncio
async def test_failure_after_on_ack_switches_port_off_and_frees_it(env, monkeypatch):
    async def locked_db(db, session):
        raise aiosqlite.OperationalError("database is locked")
    monkeypatch.setattr(repository, "create_session", locked_db)

    with pytest.raises(aiosqlite.OperationalError):
        await env.controller.acquire("alice", PORT_1)

    assert env.gateway.relay(DEVICE, 1) == RelayState.OFF
    async with get_db() as db:
        assert await repository.get_claim(db, PORT_1) is None
        assert await repository.count_user_claims(db, "alice") == 0

    monkeypatch.undo()
    session = await env.controller.acquire("alice", PORT_1)
    assert session.id is not None


@pytest.mark.asyncio
async def test_lost_claim_closes_the_half_written_session(env, monkeypatch):
    async def claim_gone(db, key, user_id, session_id):
        return 0
    monkeypatch.setattr(repository, "activate_claim", claim_gone)

    with pytest.raises(PortUnavailable):
        await env.controller.acquire("alice", PORT_1)

    async with get_db() as db:
        assert await repository.list_open_sessions(db) == []
        assert await repository.get_claim(db, PORT_1) is None
        failed = await repository.list_sessions(db, user_id="alice")
    assert [s.close_reason for s in failed] == [CloseReason.ACQUIRE_FAILED]
    assert failed[0].needs_reconciliation is False
    assert env.gateway.relay(DEVICE, 1) == RelayState.OFF


@pytest.mark.asyncio
async def test_port_reads_taken_while_acquire_waits_for_ack(env):
    entered = asyncio.Event()
    let_through = asyncio.Event()
    send = env.gateway.send_control_command

    async def held(*args):
        entered.set()
        await let_through.wait()
        return await send(*args)
    env.gateway.send_control_command = held
    controller = SessionController(gateway=env.gateway, ack_timeout=5)

    pending = asyncio.create_task(controller.acquire("alice", PORT_1))
    await asyncio.wait_for(entered.wait(), timeout=5)

    assert await state_for("bob", PORT_1) == PortState.OCCUPIED_BY_OTHER
    own = await port_monitor.get_port_view("alice", PORT_1)
    assert own.state == PortState.OWNED_BY_CALLER
    assert own.session_id is None
    assert own.session_phase == SessionPhase.REQUESTED.value
    with pytest.raises(PortUnavailable):
        await controller.acquire("bob", PORT_1)
    async with get_db() as db:
        assert await repository.active_sessions_for_user(db, "alice") == []

    let_through.set()
    session = await pending
    own = await port_monitor.get_port_view("alice", PORT_1)
    assert own.session_id == session.id
    assert own.session_phase == SessionPhase.ACTIVE.value


@pytest.mark.asyncio
async def test_lock_maps_do_not_grow_with_users(env):
    await env.controller.acquire("alice", PORT_1)
    await env.controller.release("alice", PORT_1)
    await env.controller.acquire("carol", PORT_2)

    assert len(env.controller._locks) == 0
    assert len(env.controller._user_locks) == 0

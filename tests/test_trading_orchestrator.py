"""Tests for the orchestrator: supervision, watchdog, status and close-all."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from api.aster_api import AsterAPIError
from core.enums import EventType, GroupState, SystemConstants
from core.models import Account
from core.settings_config import SystemConfig
from coordinator.group_runner import GroupRunner
from coordinator.trading_orchestrator import TradingOrchestrator
from tests.conftest import make_accounts, make_client, make_group, published


@pytest.fixture
def system_config(trading_config):
    return SystemConfig(trading=trading_config)


def build_orchestrator(system_config, event_bus, fake_time, rng, factory):
    return TradingOrchestrator(system_config, event_bus=event_bus, client_factory=factory,
                               sleep=fake_time.sleep, clock=fake_time.clock, rng=rng)


def margin_blocked_client(account):
    client = make_client()
    client.place_order.side_effect = AsterAPIError("Margin is insufficient.", code=-2019)
    return client


class TestLifecycle:
    async def test_watchdog_stops_when_every_group_is_suspended(self, system_config, event_bus, fake_time, rng):
        orchestrator = build_orchestrator(system_config, event_bus, fake_time, rng, margin_blocked_client)
        groups = [make_group("group_1", make_accounts(4, "a")), make_group("group_2", make_accounts(2, "b"))]

        await orchestrator.start_trading(groups)
        await asyncio.wait_for(orchestrator.join(), timeout=5)

        assert orchestrator.is_running is False
        assert all(s.state == GroupState.TERMINATED for s in orchestrator.get_group_snapshots())

        events = published(event_bus)
        assert events[0].event_type == EventType.TRADING_STARTED
        assert events[0].groups == 2
        stopped = [e for e in events if e.event_type == EventType.TRADING_STOPPED]
        assert len(stopped) == 1
        assert stopped[0].reason == "no_active_groups"
        deactivated = [e for e in events if e.event_type == EventType.GROUP_DEACTIVATED]
        assert {e.group_id for e in deactivated} == {"group_1", "group_2"}

    async def test_watchdog_ignores_quarantined_groups(self, system_config, event_bus, fake_time, rng):
        orchestrator = build_orchestrator(system_config, event_bus, fake_time, rng, margin_blocked_client)
        quarantined = GroupRunner(make_group("group_1"), {}, system_config.trading, clock=fake_time.clock)
        quarantined.state = GroupState.QUARANTINED
        quarantined.until = fake_time.now + SystemConstants.QUARANTINE_SECONDS
        suspended = GroupRunner(make_group("group_2"), {}, system_config.trading, clock=fake_time.clock)
        suspended.state = GroupState.SUSPENDED
        orchestrator.runners = {"group_1": quarantined, "group_2": suspended}
        orchestrator.is_running = True

        assert orchestrator.get_status()["active_groups"] == 0
        assert await orchestrator._watchdog() is False

        assert orchestrator.is_running is False
        assert quarantined.stop_requested and suspended.stop_requested
        stopped = [e for e in published(event_bus) if e.event_type == EventType.TRADING_STOPPED]
        assert [e.reason for e in stopped] == ["no_active_groups"]

    async def test_watchdog_keeps_running_with_one_active_group(self, system_config, event_bus, fake_time, rng):
        orchestrator = build_orchestrator(system_config, event_bus, fake_time, rng, margin_blocked_client)
        active = GroupRunner(make_group("group_1"), {}, system_config.trading)
        quarantined = GroupRunner(make_group("group_2"), {}, system_config.trading)
        quarantined.state = GroupState.QUARANTINED
        orchestrator.runners = {"group_1": active, "group_2": quarantined}
        orchestrator.is_running = True

        assert await orchestrator._watchdog() is True
        assert orchestrator.get_status()["active_groups"] == 1

    async def test_start_twice_raises(self, system_config, event_bus, fake_time, rng):
        orchestrator = build_orchestrator(system_config, event_bus, fake_time, rng, margin_blocked_client)
        groups = [make_group()]

        await orchestrator.start_trading(groups)
        with pytest.raises(RuntimeError):
            await orchestrator.start_trading(groups)

        await orchestrator.stop_trading()
        await asyncio.wait_for(orchestrator.join(), timeout=5)

    async def test_stop_trading_is_idempotent(self, system_config, event_bus, fake_time, rng):
        orchestrator = build_orchestrator(system_config, event_bus, fake_time, rng, margin_blocked_client)
        await orchestrator.start_trading([make_group()])

        await orchestrator.stop_trading()
        await orchestrator.stop_trading()
        await asyncio.wait_for(orchestrator.join(), timeout=5)

        stopped = [e for e in published(event_bus) if e.event_type == EventType.TRADING_STOPPED]
        assert len(stopped) == 1
        assert stopped[0].reason == "user_request"

    async def test_clients_shared_per_account_and_closed(self, system_config, event_bus, fake_time, rng):
        created = []

        def factory(account):
            client = margin_blocked_client(account)
            created.append(client)
            return client

        orchestrator = build_orchestrator(system_config, event_bus, fake_time, rng, factory)
        await orchestrator.start_trading([make_group()])
        await asyncio.wait_for(orchestrator.join(), timeout=5)
        await orchestrator.close()

        assert len(created) == 4
        for client in created:
            client.close.assert_awaited_once()


class TestStatus:
    def test_status_before_start(self, system_config, event_bus, fake_time, rng):
        orchestrator = build_orchestrator(system_config, event_bus, fake_time, rng, margin_blocked_client)

        assert orchestrator.get_status() == {
            "is_running": False,
            "total_groups": 0,
            "active_groups": 0,
            "total_pnl": Decimal("0"),
        }
        assert orchestrator.get_group_pnl("missing").total_pnl == Decimal("0")

    async def test_pnl_aggregated_across_groups(self, system_config, event_bus, fake_time, rng):
        orchestrator = build_orchestrator(system_config, event_bus, fake_time, rng, margin_blocked_client)
        await orchestrator.start_trading([make_group("group_1", make_accounts(2, "a")),
                                          make_group("group_2", make_accounts(2, "b"))])
        await orchestrator.stop_trading()
        await asyncio.wait_for(orchestrator.join(), timeout=5)

        orchestrator.runners["group_1"].ledger.record_cycle(1, 0.0, Decimal("1.25"), 1)
        orchestrator.runners["group_2"].ledger.record_cycle(1, 0.0, Decimal("-0.25"), 1)

        assert orchestrator.get_total_pnl() == Decimal("1.00")
        assert set(orchestrator.get_all_groups_pnl()) == {"group_1", "group_2"}
        assert orchestrator.get_status()["total_groups"] == 2

    async def test_resume_group_reactivates_suspended_runner(self, system_config, event_bus, fake_time, rng):
        orchestrator = build_orchestrator(system_config, event_bus, fake_time, rng, margin_blocked_client)
        await orchestrator.start_trading([make_group()])
        await orchestrator.stop_trading()
        await asyncio.wait_for(orchestrator.join(), timeout=5)

        runner = orchestrator.runners["group_1"]
        runner.state = GroupState.SUSPENDED

        assert await orchestrator.resume_group("group_1") is True
        assert runner.state == GroupState.ACTIVE
        assert await orchestrator.resume_group("missing") is False

    async def test_reset_pnl_clears_group_history(self, system_config, event_bus, fake_time, rng):
        orchestrator = build_orchestrator(system_config, event_bus, fake_time, rng, margin_blocked_client)
        await orchestrator.start_trading([make_group("group_1", make_accounts(2, "a")),
                                          make_group("group_2", make_accounts(2, "b"))])
        await orchestrator.stop_trading()
        await asyncio.wait_for(orchestrator.join(), timeout=5)
        orchestrator.runners["group_1"].ledger.record_cycle(1, 0.0, Decimal("2"), 1)
        orchestrator.runners["group_2"].ledger.record_cycle(1, 0.0, Decimal("3"), 1)

        assert orchestrator.reset_pnl("group_1") is True
        assert orchestrator.get_total_pnl() == Decimal("3")

        assert orchestrator.reset_pnl() is True
        assert orchestrator.get_total_pnl() == Decimal("0")
        assert orchestrator.get_group_pnl("group_2").trades == []
        assert orchestrator.reset_pnl("missing") is False


class TestCloseAllPositions:
    async def test_closes_non_dust_positions_with_opposite_reduce_only_orders(self, system_config, event_bus,
                                                                              fake_time, rng):
        clients = {}

        def factory(account):
            client = AsyncMock()
            client.__aenter__.return_value = client
            client.get_positions.return_value = [
                {"symbol": "BTCUSDT", "positionAmt": "0.133"},
                {"symbol": "ETHUSDT", "positionAmt": "-1.5"},
                {"symbol": "BNBUSDT", "positionAmt": "0.0005"},
                {"symbol": "SOLUSDT", "positionAmt": "-0.001"},
            ]
            clients[account.account_name] = client
            return client

        orchestrator = build_orchestrator(system_config, event_bus, fake_time, rng, factory)
        invalid = Account(account_name="bad", exchange="Aster", api_key="same", secret_key="same")
        accounts = make_accounts(2) + [invalid]

        result = await orchestrator.close_all_positions(accounts)

        assert result.success is True
        assert result.closed_count == 4
        assert len(result.errors) == 1
        assert "bad" in result.errors[0]
        assert "bad" not in clients

        calls = clients["acc_1"].place_order.call_args_list
        assert [c.args[:3] for c in calls] == [("BTCUSDT", "SELL", "MARKET"), ("ETHUSDT", "BUY", "MARKET")]
        assert [c.kwargs["quantity"] for c in calls] == [Decimal("0.133"), Decimal("1.5")]
        assert all(c.kwargs["reduce_only"] is True for c in calls)

        assert fake_time.sleeps.count(SystemConstants.CLOSE_ALL_POSITION_DELAY) == 4
        assert fake_time.sleeps.count(SystemConstants.CLOSE_ALL_ACCOUNT_DELAY) == 2

    async def test_account_failure_does_not_stop_next_account(self, system_config, event_bus, fake_time, rng):
        def factory(account):
            client = AsyncMock()
            client.__aenter__.return_value = client
            if account.account_name == "acc_1":
                client.get_positions.side_effect = AsterAPIError("Invalid API-key", code=-2015, status=401)
            else:
                client.get_positions.return_value = [{"symbol": "BTCUSDT", "positionAmt": "0.5"}]
            return client

        orchestrator = build_orchestrator(system_config, event_bus, fake_time, rng, factory)

        result = await orchestrator.close_all_positions(make_accounts(2))

        assert result.success is False
        assert result.closed_count == 1
        assert len(result.errors) == 1
        assert "acc_1" in result.errors[0]

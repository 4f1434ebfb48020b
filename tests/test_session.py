"""
Tests for the Session Controller

Accrual, checkpoint/recover, settlement and the failure policy, driven on
virtual time.
"""

import asyncio
import pytest

from billing.catalog import AllowListAccessControl, StaticCatalog
from billing.gateway import ContractError
from metering.amounts import MAX_AMOUNT
from metering.config import EngineConfig, SettlementPolicy
from metering.errors import (
    ErrorKind,
    InvalidTransition,
    RecoveryDataCorruption,
)
from metering.faults import ScriptedFaultSimulator
from metering.session import SessionStatus

from conftest import HangingGateway


class TestScenarios:
    """End-to-end metering scenarios."""

    @pytest.mark.asyncio
    async def test_checkpoint_written_on_interval(self, scheduler, make_controller, checkpoint_store):
        """2 units/sec with 5s checkpoints: confirmed value 10 at t=5000."""
        controller = make_controller(config=EngineConfig(checkpoint_interval_ms=5000))
        assert controller.start("film", rate_per_minute=120).success

        await scheduler.advance(5000)

        checkpoint = checkpoint_store.load("session-1")
        assert checkpoint.confirmed_value == 10
        assert checkpoint.confirmed_at == 5000
        assert controller.session.confirmed_value == 10

    @pytest.mark.asyncio
    async def test_disconnect_recovers_last_checkpoint(self, scheduler, make_controller):
        """Disconnect at t=6000 (live 12) restores 10 on reconnect at t=8000."""
        controller = make_controller(
            config=EngineConfig(checkpoint_interval_ms=5000, reconnect_delay_ms=2000),
            fault_simulator=ScriptedFaultSimulator([6]),
        )
        controller.start("film", rate_per_minute=120)

        await scheduler.advance(6000)
        assert controller.status == SessionStatus.RECONNECTING
        assert controller.session.total_accrued == 12

        await scheduler.advance(2000)
        assert controller.status == SessionStatus.ACTIVE
        assert controller.session.total_accrued == 10

    @pytest.mark.asyncio
    async def test_periodic_settlement_success(self, scheduler, make_controller, gateway):
        """Flush at t=30000 settles 30 and clears pending."""
        controller = make_controller(gateway=gateway)
        controller.start("film", rate_per_minute=60)

        await scheduler.advance(30000)

        assert controller.session.pending_amount == 0
        assert controller.session.total_settled == 30
        assert [p.amount for p in gateway.payments] == [30]

    @pytest.mark.asyncio
    async def test_periodic_settlement_failure_stops_session(self, scheduler, make_controller, gateway):
        """A failed flush keeps pending at 30 and stops all ticking."""
        gateway.fail_next(1)
        controller = make_controller(gateway=gateway)
        controller.start("film", rate_per_minute=60)

        await scheduler.advance(30000)
        assert controller.status == SessionStatus.FAILED
        assert controller.session.pending_amount == 30

        await scheduler.advance(10000)
        assert controller.session.pending_amount == 30
        assert controller.session.ticks == 30
        assert gateway.calls == 1
        assert scheduler.pending_timers() == 0

    @pytest.mark.asyncio
    async def test_tick_during_flush_is_kept(self, scheduler, make_controller, blocking_gateway):
        """A tick landing while 30 is in flight leaves pending at 1."""
        controller = make_controller(gateway=blocking_gateway)
        controller.start("film", rate_per_minute=60)

        await scheduler.advance(30000)
        assert blocking_gateway.calls[0][1] == 30

        await scheduler.advance(1000)
        assert controller.session.pending_amount == 31

        blocking_gateway.release()
        await scheduler.drain()

        assert controller.session.pending_amount == 1
        assert controller.session.total_settled == 30


class TestAccrual:
    """Fixed-point accrual on ticks."""

    @pytest.mark.asyncio
    async def test_accrual_matches_exact_total(self, scheduler, make_controller):
        """7 per minute for 10 minutes accrues exactly 70 (no drift)."""
        controller = make_controller(checkpoint_store=None)
        controller.start("film", rate_per_minute=7)

        await scheduler.advance(29000)
        assert controller.session.pending_amount == 29 * 7 // 60

        await scheduler.advance(600000 - 29000)
        assert controller.session.pending_amount == 70

    @pytest.mark.asyncio
    async def test_zero_rate_accrues_nothing(self, scheduler, make_controller, gateway):
        controller = make_controller(gateway=gateway)
        controller.start("free", rate_per_minute=0)

        await scheduler.advance(60000)

        assert controller.session.pending_amount == 0
        assert gateway.calls == 0

    @pytest.mark.asyncio
    async def test_overflow_fails_session(self, scheduler, make_controller):
        """Accrual past the ledger ceiling is fatal."""
        controller = make_controller(
            config=EngineConfig(tick_interval_ms=60000),
            checkpoint_store=None,
        )
        controller.start("film", rate_per_minute=MAX_AMOUNT)

        await scheduler.advance(120000)

        assert controller.status == SessionStatus.FAILED
        assert controller.session.pending_amount == MAX_AMOUNT
        assert controller.get_stats().last_error_kind == ErrorKind.ACCRUAL.value

    def test_negative_rate_rejected(self, make_controller):
        controller = make_controller()
        result = controller.start("film", rate_per_minute=-1)

        assert not result.success
        assert result.error.kind == ErrorKind.ACCRUAL
        assert controller.status == SessionStatus.IDLE


class TestStart:
    """Starting and restarting sessions."""

    def test_start_twice_is_invalid(self, make_controller):
        controller = make_controller()
        controller.start("film", rate_per_minute=60)

        result = controller.start("film", rate_per_minute=60)

        assert not result.success
        assert result.error_kind == "INVALID_STATE"

    def test_rate_from_catalog(self, make_controller):
        """Omitting the rate reads it from the catalog."""
        controller = make_controller(catalog=StaticCatalog({"film": 120}))

        assert controller.start("film").success
        assert controller.session.rate_per_minute == 120

    def test_unknown_content_is_a_result(self, make_controller):
        controller = make_controller(catalog=StaticCatalog({"film": 120}))

        result = controller.start("missing")

        assert not result.success
        assert result.error.kind == ErrorKind.CONTENT_NOT_FOUND
        assert controller.status == SessionStatus.IDLE

    def test_access_denied(self, make_controller):
        access = AllowListAccessControl([("film", "alice")])
        controller = make_controller(access_control=access)

        result = controller.start("film", rate_per_minute=60, viewer="bob")

        assert not result.success
        assert result.error.kind == ErrorKind.ACCESS_DENIED
        assert controller.status == SessionStatus.IDLE

    def test_access_granted(self, make_controller):
        access = AllowListAccessControl([("film", "alice")])
        controller = make_controller(access_control=access)

        assert controller.start("film", rate_per_minute=60, viewer="alice").success

    def test_baseline_checkpoint_failure_blocks_start(self, make_controller, kv):
        kv.fail_writes = True
        controller = make_controller()

        result = controller.start("film", rate_per_minute=60)

        assert not result.success
        assert result.error.kind == ErrorKind.CHECKPOINT_PERSISTENCE
        assert controller.status == SessionStatus.IDLE

    @pytest.mark.asyncio
    async def test_restart_same_content_carries_settled(self, scheduler, make_controller, gateway):
        controller = make_controller(gateway=gateway)
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(10000)
        await controller.stop()

        assert controller.start("film", rate_per_minute=60).success
        assert controller.session.total_settled == 10
        assert controller.session.pending_amount == 0

    @pytest.mark.asyncio
    async def test_restart_other_content_starts_fresh(self, scheduler, make_controller, gateway):
        controller = make_controller(gateway=gateway)
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(10000)
        await controller.stop()

        controller.start("series", rate_per_minute=60)

        assert controller.session.total_settled == 0


class TestStop:
    """Stopping with a final settlement."""

    @pytest.mark.asyncio
    async def test_stop_settles_remaining(self, scheduler, make_controller, gateway):
        controller = make_controller(gateway=gateway)
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(10000)

        result = await controller.stop()

        assert result.success
        assert result.settlement.amount == 10
        assert result.settlement.final
        assert controller.status == SessionStatus.STOPPED
        assert controller.session.pending_amount == 0
        assert controller.session.total_settled == 10

    @pytest.mark.asyncio
    async def test_no_ticks_after_stop(self, scheduler, make_controller, gateway):
        controller = make_controller(gateway=gateway)
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(10000)
        await controller.stop()

        await scheduler.advance(60000)

        assert controller.session.ticks == 10
        assert gateway.calls == 1

    @pytest.mark.asyncio
    async def test_stop_with_nothing_pending(self, make_controller, gateway):
        """Stopping at zero pending makes no gateway call."""
        controller = make_controller(gateway=gateway)
        controller.start("film", rate_per_minute=60)

        result = await controller.stop()

        assert result.success
        assert result.settlement is None
        assert gateway.calls == 0
        assert controller.status == SessionStatus.STOPPED

    @pytest.mark.asyncio
    async def test_final_settlement_failure(self, scheduler, make_controller, gateway):
        """A failed final flush ends Failed with the amount retained."""
        controller = make_controller(gateway=gateway)
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(10000)
        gateway.fail_next(1, ContractError.INSUFFICIENT_PAYMENT)

        result = await controller.stop()

        assert not result.success
        assert result.error.kind == ErrorKind.SETTLEMENT_FAILURE
        assert result.error.user_message == "Insufficient payment"
        assert controller.status == SessionStatus.FAILED
        assert controller.session.pending_amount == 10

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_flush(self, scheduler, make_controller, blocking_gateway):
        controller = make_controller(gateway=blocking_gateway)
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(32000)

        stopping = asyncio.ensure_future(controller.stop())
        await scheduler.drain()
        assert controller.status == SessionStatus.SETTLING
        assert len(blocking_gateway.calls) == 1

        blocking_gateway.release()
        await scheduler.drain()
        assert len(blocking_gateway.calls) == 2
        assert blocking_gateway.calls[1][1] == 2

        blocking_gateway.release()
        result = await stopping

        assert result.success
        assert controller.status == SessionStatus.STOPPED
        assert controller.session.total_settled == 32
        assert controller.session.pending_amount == 0

    @pytest.mark.asyncio
    async def test_score_variant_stop_keeps_score(self, scheduler, make_controller):
        controller = make_controller()
        controller.start("game", rate_per_minute=60)
        await scheduler.advance(15000)

        result = await controller.stop()

        assert result.success
        assert controller.status == SessionStatus.STOPPED
        assert controller.session.pending_amount == 15

    @pytest.mark.asyncio
    async def test_stop_from_idle_is_invalid(self, make_controller):
        result = await make_controller().stop()

        assert not result.success
        assert result.error.kind == ErrorKind.INVALID_STATE


class TestSettlementPolicy:
    """Retry, timeout and final-flush behavior."""

    @pytest.mark.asyncio
    async def test_retry_with_backoff_recovers(self, scheduler, make_controller, gateway):
        gateway.fail_next(2)
        config = EngineConfig(policy=SettlementPolicy(max_retries=2, backoff_ms=1000))
        controller = make_controller(gateway=gateway, config=config)
        controller.start("film", rate_per_minute=60)

        await scheduler.advance(30000)
        assert gateway.calls == 1
        await scheduler.advance(1000)
        assert gateway.calls == 2
        await scheduler.advance(2000)

        assert gateway.calls == 3
        assert controller.status == SessionStatus.ACTIVE
        assert controller.session.total_settled == 30
        assert controller.session.pending_amount == 3
        assert controller.settlement.attempts[0].tries == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted_fails(self, scheduler, make_controller, gateway):
        gateway.fail_next(5)
        config = EngineConfig(policy=SettlementPolicy(max_retries=1, backoff_ms=500))
        controller = make_controller(gateway=gateway, config=config)
        controller.start("film", rate_per_minute=60)

        await scheduler.advance(31000)

        assert gateway.calls == 2
        assert controller.status == SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, scheduler, make_controller):
        hanging = HangingGateway()
        controller = make_controller(
            gateway=hanging,
            config=EngineConfig(settlement_timeout_ms=20),
        )
        controller.start("film", rate_per_minute=60)

        await scheduler.advance(30000)
        await asyncio.sleep(0.2)
        await scheduler.drain()

        assert hanging.calls == 1
        assert controller.status == SessionStatus.FAILED
        assert controller.session.pending_amount == 30
        assert controller.get_stats().last_error_kind == "SETTLEMENT_FAILURE"

    @pytest.mark.asyncio
    async def test_final_flush_on_failure(self, scheduler, make_controller, gateway):
        """One extra flush after a failure, and the session stays Failed."""
        gateway.fail_next(1)
        controller = make_controller(
            gateway=gateway,
            config=EngineConfig(final_flush_on_failure=True),
        )
        controller.start("film", rate_per_minute=60)

        await scheduler.advance(30000)
        await scheduler.drain()

        assert gateway.calls == 2
        assert controller.status == SessionStatus.FAILED
        assert controller.session.total_settled == 30
        assert controller.session.pending_amount == 0

    @pytest.mark.asyncio
    async def test_final_flush_is_attempted_once(self, scheduler, make_controller, gateway):
        gateway.fail_next(3)
        controller = make_controller(
            gateway=gateway,
            config=EngineConfig(final_flush_on_failure=True),
        )
        controller.start("film", rate_per_minute=60)

        await scheduler.advance(30000)
        await scheduler.drain()
        await scheduler.advance(30000)

        assert gateway.calls == 2
        assert controller.session.pending_amount == 30
        assert controller.session.final_attempt_made

    @pytest.mark.asyncio
    async def test_scheduled_flush_skipped_while_in_flight(self, scheduler, make_controller, blocking_gateway):
        controller = make_controller(gateway=blocking_gateway)
        controller.start("film", rate_per_minute=60)

        await scheduler.advance(60000)

        assert len(blocking_gateway.calls) == 1
        assert controller.settlement.skipped == 1
        assert controller.session.pending_amount == 60


class TestFlushNow:
    """Manual settlement."""

    @pytest.mark.asyncio
    async def test_flush_now_settles_pending(self, scheduler, make_controller, gateway):
        controller = make_controller(gateway=gateway)
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(5000)

        result = await controller.flush_now()

        assert result.success
        assert result.settlement.amount == 5
        assert controller.session.pending_amount == 0
        assert controller.session.settlement_count == 1

    @pytest.mark.asyncio
    async def test_flush_at_zero_is_noop(self, make_controller, gateway):
        """Nothing pending: no gateway call, no state change."""
        controller = make_controller(gateway=gateway)
        controller.start("film", rate_per_minute=60)

        result = await controller.flush_now()

        assert result.success
        assert result.settlement is None
        assert gateway.calls == 0
        assert controller.session.total_settled == 0

    @pytest.mark.asyncio
    async def test_flush_now_failure_fails_session(self, scheduler, make_controller, gateway):
        controller = make_controller(gateway=gateway)
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(5000)
        gateway.fail_next(1)

        result = await controller.flush_now()

        assert not result.success
        assert result.settlement.amount == 5
        assert controller.status == SessionStatus.FAILED
        assert controller.session.pending_amount == 5

    @pytest.mark.asyncio
    async def test_flush_now_requires_gateway(self, make_controller):
        controller = make_controller()
        controller.start("game", rate_per_minute=60)

        result = await controller.flush_now()

        assert result.error.kind == ErrorKind.INVALID_STATE


class TestCheckpointAndRecover:
    """Checkpoint persistence and recovery."""

    @pytest.mark.asyncio
    async def test_checkpoint_failure_keeps_accruing(self, scheduler, make_controller, kv):
        controller = make_controller()
        controller.start("film", rate_per_minute=60)
        kv.fail_writes = True

        await scheduler.advance(10000)

        assert controller.status == SessionStatus.ACTIVE
        assert controller.session.pending_amount == 10
        assert controller.session.confirmed_value == 0
        assert controller.get_stats().last_error_kind == "CHECKPOINT_PERSISTENCE"

    @pytest.mark.asyncio
    async def test_recover_restores_confirmed_value(self, scheduler, make_controller, gateway, checkpoint_store):
        """Live value after recover equals the last checkpoint."""
        controller = make_controller(gateway=gateway, config=EngineConfig(checkpoint_interval_ms=5000))
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(7000)

        checkpoint = controller.recover()

        assert checkpoint.confirmed_value == 5
        assert controller.session.total_accrued == 5
        assert controller.session.last_checkpoint_time == 5000
        assert controller.session.last_settlement_time == 5000

    @pytest.mark.asyncio
    async def test_recover_never_drops_below_settled(self, scheduler, make_controller, gateway):
        controller = make_controller(gateway=gateway, config=EngineConfig(checkpoint_interval_ms=25000))
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(32000)
        assert controller.session.total_settled == 30

        controller.recover()

        assert controller.session.pending_amount == 0
        assert controller.session.total_settled == 30

    def test_recover_without_checkpoint_is_noop(self, make_controller, checkpoint_store):
        controller = make_controller()

        assert controller.recover() is None
        assert controller.status == SessionStatus.IDLE

    def test_recover_from_idle_loads_saved_value(self, make_controller, checkpoint_store):
        checkpoint_store.save("session-1", 42, 1000, content_id="game")
        controller = make_controller()

        controller.recover()

        assert controller.session.pending_amount == 42
        assert controller.session.content_id == "game"

    @pytest.mark.asyncio
    async def test_corrupt_checkpoint_fails_reconnect(self, scheduler, make_controller, kv):
        controller = make_controller(config=EngineConfig(auto_reconnect=False))
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(3000)
        controller.on_disconnect()
        kv.set("checkpoint:session-1", '{"session_id": "session-1", "confirmed_value": "10"}')

        with pytest.raises(RecoveryDataCorruption):
            controller.on_reconnect()

        assert controller.status == SessionStatus.FAILED
        assert controller.get_stats().last_error_kind == "RECOVERY_DATA_CORRUPTION"

    def test_checkpoint_requires_active(self, make_controller):
        with pytest.raises(InvalidTransition):
            make_controller().checkpoint()


class TestConnectivity:
    """Disconnect and reconnect handling."""

    @pytest.mark.asyncio
    async def test_no_ticks_while_reconnecting(self, scheduler, make_controller):
        controller = make_controller(config=EngineConfig(auto_reconnect=False))
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(3000)

        controller.on_disconnect()
        await scheduler.advance(60000)

        assert controller.status == SessionStatus.RECONNECTING
        assert controller.session.ticks == 3

    @pytest.mark.asyncio
    async def test_manual_reconnect_resumes(self, scheduler, make_controller):
        controller = make_controller(config=EngineConfig(auto_reconnect=False, checkpoint_interval_ms=2000))
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(3000)
        controller.on_disconnect()

        controller.on_reconnect()
        await scheduler.advance(4000)

        assert controller.status == SessionStatus.ACTIVE
        assert controller.session.total_accrued == 6

    def test_disconnect_from_idle_is_invalid(self, make_controller):
        with pytest.raises(InvalidTransition):
            make_controller().on_disconnect()

    @pytest.mark.asyncio
    async def test_stop_while_reconnecting(self, scheduler, make_controller, gateway):
        controller = make_controller(gateway=gateway, config=EngineConfig(auto_reconnect=False))
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(4000)
        controller.on_disconnect()

        result = await controller.stop()

        assert result.success
        assert controller.status == SessionStatus.STOPPED
        assert controller.session.total_settled == 4

    @pytest.mark.asyncio
    async def test_disconnect_drops_scheduled_flush(self, scheduler, make_controller, gateway):
        """A flush spawned just before a disconnect never reaches the gateway."""
        controller = make_controller(gateway=gateway, config=EngineConfig(auto_reconnect=False))
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(29000)

        controller.settlement._on_timer()
        controller.on_disconnect()
        await scheduler.drain()

        assert gateway.calls == 0
        assert controller.session.total_settled == 0
        assert controller.session.pending_amount == 29

    @pytest.mark.asyncio
    async def test_reconnect_does_not_revive_scheduled_flush(self, scheduler, make_controller, gateway):
        controller = make_controller(gateway=gateway, config=EngineConfig(auto_reconnect=False))
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(29000)

        controller.settlement._on_timer()
        controller.on_disconnect()
        controller.on_reconnect()
        await scheduler.drain()

        assert gateway.calls == 0
        assert controller.status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_stop_drops_scheduled_flush(self, scheduler, make_controller, gateway):
        """Only the final settlement runs when stop() follows a spawned flush."""
        controller = make_controller(gateway=gateway)
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(29000)

        controller.settlement._on_timer()
        result = await controller.stop()
        await scheduler.drain()

        assert result.success
        assert gateway.calls == 1
        assert [p.amount for p in gateway.payments] == [29]
        assert controller.session.total_settled == 29


class TestReset:
    """Reset to Idle."""

    @pytest.mark.asyncio
    async def test_reset_clears_everything(self, scheduler, make_controller, gateway, checkpoint_store):
        controller = make_controller(gateway=gateway)
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(12000)

        result = controller.reset()

        assert result.success
        assert controller.status == SessionStatus.IDLE
        assert controller.session.pending_amount == 0
        assert controller.session.total_settled == 0
        assert checkpoint_store.load("session-1") is None

    @pytest.mark.asyncio
    async def test_reset_from_failed(self, scheduler, make_controller, gateway):
        gateway.fail_next(1)
        controller = make_controller(gateway=gateway)
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(30000)
        assert controller.status == SessionStatus.FAILED

        controller.reset()

        assert controller.start("film", rate_per_minute=60).success

    @pytest.mark.asyncio
    async def test_flush_completing_after_reset_is_ignored(self, scheduler, make_controller, blocking_gateway):
        controller = make_controller(gateway=blocking_gateway)
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(30000)

        controller.reset()
        blocking_gateway.release()
        await scheduler.drain()

        assert controller.status == SessionStatus.IDLE
        assert controller.session.pending_amount == 0
        assert controller.session.total_settled == 0


class TestStats:
    """get_stats snapshot."""

    @pytest.mark.asyncio
    async def test_stats_after_one_minute(self, scheduler, make_controller):
        controller = make_controller()
        controller.start("film", rate_per_minute=60)
        await scheduler.advance(60000)

        stats = controller.get_stats()

        assert stats.duration_seconds == 60.0
        assert stats.total_accrued == 60
        assert stats.current_rate_per_minute == 60
        assert stats.confirmed_value == 60
        assert stats.to_dict()["status"] == "Active"

    def test_stats_idle(self, make_controller):
        stats = make_controller().get_stats()

        assert stats.status == SessionStatus.IDLE
        assert stats.duration_seconds == 0
        assert stats.last_error_kind is None

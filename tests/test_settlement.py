"""
Tests for the Settlement Scheduler

Snapshot-and-subtract settlement, idempotency keys and the audit ledger,
exercised without a controller.
"""

import asyncio
import pytest

from billing.gateway import ContractError
from metering.config import SettlementPolicy
from metering.errors import SettlementFailure
from metering.session import Session
from metering.settlement import SettlementResult, SettlementScheduler


class RecordingLedger:
    def __init__(self, fail=False):
        self.attempts = []
        self.fail = fail

    def record(self, attempt):
        if self.fail:
            raise RuntimeError("ledger offline")
        self.attempts.append(attempt)


def bind(scheduler, session):
    settled, failed = [], []

    def on_settled(s, attempt):
        s.pending_amount -= attempt.amount
        s.total_settled += attempt.amount
        settled.append(attempt)

    scheduler.bind(session, on_settled, lambda s, exc: failed.append(exc))
    return settled, failed


@pytest.fixture
def session():
    return Session(session_id="s1", content_id="film", pending_amount=25)


class TestFlush:
    """Test manual flushes."""

    @pytest.mark.asyncio
    async def test_success_subtracts_snapshot(self, clock, gateway, session):
        scheduler = SettlementScheduler(gateway, clock)
        settled, _ = bind(scheduler, session)

        attempt = await scheduler.flush()

        assert attempt.result == SettlementResult.SUCCESS
        assert attempt.amount == 25
        assert attempt.external_ref.startswith("0x")
        assert session.pending_amount == 0
        assert session.total_settled == 25
        assert settled == [attempt]

    @pytest.mark.asyncio
    async def test_zero_pending_is_noop(self, clock, gateway, session):
        session.pending_amount = 0
        scheduler = SettlementScheduler(gateway, clock)
        bind(scheduler, session)

        assert await scheduler.flush() is None
        assert gateway.calls == 0
        assert scheduler.attempts == []

    @pytest.mark.asyncio
    async def test_failure_leaves_pending(self, clock, gateway, session):
        gateway.fail_next(1, ContractError.CONTRACT_PAUSED)
        scheduler = SettlementScheduler(gateway, clock)
        bind(scheduler, session)

        with pytest.raises(SettlementFailure) as exc_info:
            await scheduler.flush()

        assert exc_info.value.attempt.amount == 25
        assert exc_info.value.user_message == "Contract is paused"
        assert session.pending_amount == 25
        assert session.total_settled == 0
        assert not scheduler.in_flight

    @pytest.mark.asyncio
    async def test_idempotency_key_is_attempt_id(self, clock, blocking_gateway, session, scheduler):
        settlement = SettlementScheduler(blocking_gateway, clock)
        bind(settlement, session)

        task = asyncio.ensure_future(settlement.flush())
        await scheduler.drain()
        blocking_gateway.release()
        attempt = await task

        assert blocking_gateway.calls == [("film", 25, attempt.attempt_id)]
        assert attempt.attempt_id.startswith("STL-")

    @pytest.mark.asyncio
    async def test_retries_reuse_snapshot(self, clock, gateway, session, scheduler):
        gateway.fail_next(1)
        settlement = SettlementScheduler(
            gateway, clock, policy=SettlementPolicy(max_retries=1, backoff_ms=100)
        )
        bind(settlement, session)

        task = asyncio.ensure_future(settlement.flush())
        await scheduler.drain()
        session.pending_amount += 5
        await scheduler.advance(100)
        attempt = await task

        assert attempt.tries == 2
        assert attempt.amount == 25
        assert session.pending_amount == 5

    @pytest.mark.asyncio
    async def test_gateway_exception_is_failure(self, clock, session):
        class BrokenGateway:
            async def purchase(self, content_id, amount, idempotency_key=None):
                raise ConnectionError("network down")

        scheduler = SettlementScheduler(BrokenGateway(), clock)
        bind(scheduler, session)

        with pytest.raises(SettlementFailure) as exc_info:
            await scheduler.flush()

        assert "network down" in exc_info.value.attempt.error_message


class TestLedger:
    """Test the audit trail hook."""

    @pytest.mark.asyncio
    async def test_every_attempt_recorded(self, clock, gateway, session):
        ledger = RecordingLedger()
        scheduler = SettlementScheduler(gateway, clock, ledger=ledger)
        bind(scheduler, session)

        await scheduler.flush()
        session.pending_amount = 7
        gateway.fail_next(1)
        with pytest.raises(SettlementFailure):
            await scheduler.flush()

        assert [a.result for a in ledger.attempts] == [
            SettlementResult.SUCCESS,
            SettlementResult.FAILURE,
        ]

    @pytest.mark.asyncio
    async def test_ledger_failure_does_not_undo_settlement(self, clock, gateway, session):
        scheduler = SettlementScheduler(gateway, clock, ledger=RecordingLedger(fail=True))
        bind(scheduler, session)

        attempt = await scheduler.flush()

        assert attempt.succeeded
        assert session.total_settled == 25


class TestPeriodic:
    """Test the periodic timer."""

    @pytest.mark.asyncio
    async def test_periodic_failure_reported(self, clock, gateway, session, scheduler):
        gateway.fail_next(1)
        settlement = SettlementScheduler(gateway, clock, interval_ms=1000)
        _, failed = bind(settlement, session)
        settlement.start()

        await scheduler.advance(1000)

        assert len(failed) == 1
        assert isinstance(failed[0], SettlementFailure)

    @pytest.mark.asyncio
    async def test_stop_cancels_timer(self, clock, gateway, session, scheduler):
        settlement = SettlementScheduler(gateway, clock, interval_ms=1000)
        bind(settlement, session)
        settlement.start()
        settlement.stop()

        await scheduler.advance(5000)

        assert gateway.calls == 0
        assert not settlement.running

    def test_start_requires_bind(self, clock, gateway):
        with pytest.raises(RuntimeError):
            SettlementScheduler(gateway, clock).start()

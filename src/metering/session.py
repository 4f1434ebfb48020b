"""
Session Controller

State machine for one metering session:

    Idle -> Active -> Reconnecting -> Active (resume)
                   -> Settling (final flush inside stop()) -> Stopped
                   -> Failed

The controller owns the session's pending amount and status; nothing else
mutates them. It also owns every timer the session uses (ticks,
checkpoints, settlement, reconnect) and cancels them on each exit path
before touching state, so a late tick can never revive a stopped session.

Constructed without a gateway, the controller runs the score variant: the
accrued value is only protected by checkpoints and never settled.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union
import structlog

from billing.catalog import AccessControl, ContentCatalog, ContentNotFound
from billing.gateway import PaymentGateway

from .amounts import Accrual, AccrualRate, checked_add
from .checkpoint import Checkpoint, CheckpointStore
from .clock import Clock, TickHandle
from .config import EngineConfig
from .errors import (
    AccessDenied,
    AccrualError,
    CheckpointPersistenceFailure,
    InvalidTransition,
    MeteringError,
    SettlementFailure,
    UnknownContent,
)
from .faults import FaultSimulator, NoFaults
from .settlement import SettlementAttempt, SettlementLedger, SettlementScheduler

logger = structlog.get_logger()


class SessionStatus(Enum):
    IDLE = "Idle"
    ACTIVE = "Active"
    SETTLING = "Settling"
    RECONNECTING = "Reconnecting"
    STOPPED = "Stopped"
    FAILED = "Failed"


@dataclass
class Session:
    """Live state of one metering session. Times are epoch millis."""
    session_id: str
    content_id: Optional[str] = None
    rate_per_minute: int = 0
    status: SessionStatus = SessionStatus.IDLE
    viewer: Optional[str] = None

    pending_amount: int = 0
    total_settled: int = 0
    confirmed_value: int = 0

    start_time: Optional[int] = None
    last_tick_time: Optional[int] = None
    last_settlement_time: Optional[int] = None
    last_checkpoint_time: Optional[int] = None

    ticks: int = 0
    settlement_count: int = 0
    failure_count: int = 0
    last_error: Optional[MeteringError] = None
    final_attempt_made: bool = False

    @property
    def total_accrued(self) -> int:
        return self.pending_amount + self.total_settled


@dataclass
class OperationResult:
    """Outcome of a public session operation."""
    success: bool
    error: Optional[MeteringError] = None
    settlement: Optional[SettlementAttempt] = None

    @classmethod
    def ok(cls, settlement: Optional[SettlementAttempt] = None) -> "OperationResult":
        return cls(success=True, settlement=settlement)

    @classmethod
    def fail(
        cls,
        error: MeteringError,
        settlement: Optional[SettlementAttempt] = None,
    ) -> "OperationResult":
        return cls(success=False, error=error, settlement=settlement)

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind.value if self.error else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error.to_dict() if self.error else None,
            "settlement": self.settlement.to_dict() if self.settlement else None,
        }


@dataclass
class SessionStats:
    """Snapshot of a session for display."""
    session_id: str
    content_id: Optional[str]
    status: SessionStatus
    pending_amount: int
    total_settled: int
    total_accrued: int
    confirmed_value: int
    duration_seconds: float
    current_rate_per_minute: int
    last_checkpoint_time: Optional[int]
    last_settlement_time: Optional[int]
    settlement_count: int
    failure_count: int
    last_error_kind: Optional[str] = None
    last_error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "content_id": self.content_id,
            "status": self.status.value,
            "pending_amount": self.pending_amount,
            "total_settled": self.total_settled,
            "total_accrued": self.total_accrued,
            "confirmed_value": self.confirmed_value,
            "duration_seconds": self.duration_seconds,
            "current_rate_per_minute": self.current_rate_per_minute,
            "last_checkpoint_time": self.last_checkpoint_time,
            "last_settlement_time": self.last_settlement_time,
            "settlement_count": self.settlement_count,
            "failure_count": self.failure_count,
            "last_error_kind": self.last_error_kind,
            "last_error_message": self.last_error_message,
        }


class SessionController:
    """
    Orchestrates accrual, checkpoints and settlement for one session id.

    All collaborators are optional except the clock's scheduler: without a
    gateway there is no settlement (score variant), without a checkpoint
    store recover() is a no-op, without a catalog the rate must be passed
    to start().
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        gateway: Optional[PaymentGateway] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Clock] = None,
        catalog: Optional[ContentCatalog] = None,
        access_control: Optional[AccessControl] = None,
        fault_simulator: Optional[FaultSimulator] = None,
        ledger: Optional[SettlementLedger] = None,
        wall_clock: Optional[Callable[[], int]] = None,
    ):
        self.session_id = session_id or f"SES-{uuid.uuid4().hex[:12]}"
        self.config = config or EngineConfig()
        self.clock = clock or Clock()
        self.gateway = gateway
        self.checkpoints = checkpoint_store
        self.catalog = catalog
        self.access_control = access_control
        self.faults = fault_simulator or NoFaults()
        self._wall_clock = wall_clock or (lambda: int(time.time() * 1000))

        self.session = Session(session_id=self.session_id)
        self.settlement: Optional[SettlementScheduler] = None
        if gateway is not None:
            self.settlement = SettlementScheduler(
                gateway=gateway,
                clock=self.clock,
                interval_ms=self.config.settlement_interval_ms,
                policy=self.config.policy,
                timeout_ms=self.config.settlement_timeout_ms,
                ledger=ledger,
                now_ms=self._wall_clock,
            )

        self._accrual: Optional[Accrual] = None
        self._tick_handle: Optional[TickHandle] = None
        self._checkpoint_handle: Optional[TickHandle] = None
        self._reconnect_handle: Optional[TickHandle] = None
        self._tasks: List["asyncio.Task[None]"] = []

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    @property
    def financial(self) -> bool:
        return self.settlement is not None

    def now_ms(self) -> int:
        return self._wall_clock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        content_id: str,
        rate_per_minute: Union[int, AccrualRate, None] = None,
        viewer: Optional[str] = None,
    ) -> OperationResult:
        """
        Start (or restart) metering content_id.

        Restarting the same content from Stopped carries total_settled over;
        anything else starts from zero. pending_amount always starts at zero.
        """
        current = self.session
        if current.status not in (SessionStatus.IDLE, SessionStatus.STOPPED):
            return OperationResult.fail(InvalidTransition("start", current.status))

        if self.access_control is not None and not self.access_control.has_access(content_id, viewer):
            logger.warning("session_access_denied", content_id=content_id, viewer=viewer)
            return OperationResult.fail(AccessDenied(content_id, viewer))

        if rate_per_minute is None:
            if self.catalog is None:
                raise ValueError("rate_per_minute is required when no catalog is configured")
            try:
                rate_per_minute = self.catalog.get_rate(content_id)
            except ContentNotFound:
                logger.warning("session_unknown_content", content_id=content_id)
                return OperationResult.fail(UnknownContent(content_id))

        try:
            rate = rate_per_minute if isinstance(rate_per_minute, AccrualRate) else AccrualRate(rate_per_minute)
            accrual = Accrual(rate, self.config.tick_interval_ms)
        except AccrualError as e:
            return OperationResult.fail(e)

        carry = current.status == SessionStatus.STOPPED and current.content_id == content_id
        now = self.now_ms()
        session = Session(
            session_id=self.session_id,
            content_id=content_id,
            rate_per_minute=rate.per_minute,
            status=SessionStatus.ACTIVE,
            viewer=viewer,
            pending_amount=0,
            total_settled=current.total_settled if carry else 0,
            start_time=now,
            last_settlement_time=current.last_settlement_time if carry else None,
            settlement_count=current.settlement_count if carry else 0,
        )

        # Baseline checkpoint: a stale, higher checkpoint must never be recoverable
        if self.checkpoints is not None:
            try:
                self.checkpoints.save(self.session_id, session.total_accrued, now, content_id)
            except CheckpointPersistenceFailure as e:
                return OperationResult.fail(e)
            session.confirmed_value = session.total_accrued
            session.last_checkpoint_time = now

        self.session = session
        self._accrual = accrual
        self._start_timers()

        logger.info(
            "session_started",
            session_id=self.session_id,
            content_id=content_id,
            rate_per_minute=rate.per_minute,
            viewer=viewer,
            carried_settled=session.total_settled,
            financial=self.financial,
        )
        return OperationResult.ok()

    async def stop(self) -> OperationResult:
        """
        Stop metering and make one final settlement attempt.

        The result carries the final settlement outcome. If that attempt
        fails the session ends Failed with the amount retained.
        """
        session = self.session
        if session.status not in (SessionStatus.ACTIVE, SessionStatus.RECONNECTING):
            return OperationResult.fail(InvalidTransition("stop", session.status))

        self._cancel_timers()

        if self.settlement is None:
            session.status = SessionStatus.STOPPED
            logger.info("session_stopped", session_id=self.session_id, score=session.pending_amount)
            return OperationResult.ok()

        session.status = SessionStatus.SETTLING
        await self.settlement.wait_idle()
        if self.session is not session:
            return OperationResult.fail(InvalidTransition("stop", self.session.status))

        session.final_attempt_made = True
        try:
            attempt = await self.settlement.flush(final=True)
        except SettlementFailure as e:
            session.failure_count += 1
            self._mark_failed(session, e)
            return OperationResult.fail(e, settlement=e.attempt)

        session.status = SessionStatus.STOPPED
        logger.info(
            "session_stopped",
            session_id=self.session_id,
            total_settled=session.total_settled,
            pending_amount=session.pending_amount,
        )
        return OperationResult.ok(settlement=attempt)

    def reset(self) -> OperationResult:
        """Clear all value, erase the checkpoint and return to Idle."""
        self._cancel_timers()
        previous = self.session
        self.session = Session(session_id=self.session_id)
        self._accrual = None

        logger.info(
            "session_reset",
            session_id=self.session_id,
            previous_status=previous.status.value,
            discarded_pending=previous.pending_amount,
        )

        if self.checkpoints is not None:
            try:
                self.checkpoints.erase(self.session_id)
            except CheckpointPersistenceFailure as e:
                self.session.last_error = e
                return OperationResult.fail(e)
        return OperationResult.ok()

    def shutdown(self) -> None:
        """Cancel every timer without changing status (process exit)."""
        self._cancel_timers()
        logger.info(
            "session_shutdown",
            session_id=self.session_id,
            status=self.session.status.value,
            confirmed_value=self.session.confirmed_value,
        )

    # ------------------------------------------------------------------
    # Accrual
    # ------------------------------------------------------------------

    def on_tick(self) -> None:
        session = self.session
        if session.status != SessionStatus.ACTIVE or self._accrual is None:
            return

        try:
            session.pending_amount = checked_add(
                session.pending_amount, self._accrual.next_increment()
            )
        except AccrualError as e:
            session.failure_count += 1
            self._mark_failed(session, e)
            return

        session.ticks += 1
        session.last_tick_time = self.now_ms()

        if self.faults.should_disconnect(session):
            self.on_disconnect()

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def checkpoint(self) -> Checkpoint:
        """
        Persist the current accrued value as confirmed.

        Raises:
            InvalidTransition: session is not Active
            CheckpointPersistenceFailure: no store, or the write failed
        """
        session = self.session
        if session.status != SessionStatus.ACTIVE:
            raise InvalidTransition("checkpoint", session.status)
        if self.checkpoints is None:
            raise CheckpointPersistenceFailure("No checkpoint store configured")

        value = session.total_accrued
        now = self.now_ms()
        checkpoint = self.checkpoints.save(self.session_id, value, now, session.content_id)
        session.confirmed_value = value
        session.last_checkpoint_time = now
        return checkpoint

    def recover(self) -> Optional[Checkpoint]:
        """
        Restore the live value to the last checkpoint.

        Accrual since that checkpoint is discarded. Settled value is already
        confirmed, so the live value never drops below total_settled. With
        no checkpoint this is a no-op.

        Raises:
            CheckpointPersistenceFailure: the store could not be read
            RecoveryDataCorruption: the stored checkpoint is invalid
        """
        if self.checkpoints is None:
            return None

        checkpoint = self.checkpoints.load(self.session_id)
        session = self.session
        if checkpoint is None:
            logger.info("recover_no_checkpoint", session_id=self.session_id)
            return None

        live_before = session.total_accrued
        session.pending_amount = max(0, checkpoint.confirmed_value - session.total_settled)
        session.confirmed_value = checkpoint.confirmed_value
        session.last_checkpoint_time = checkpoint.confirmed_at
        session.last_settlement_time = checkpoint.confirmed_at
        if session.content_id is None:
            session.content_id = checkpoint.content_id
        if self._accrual is not None:
            self._accrual.reset()

        logger.info(
            "session_recovered",
            session_id=self.session_id,
            confirmed_value=checkpoint.confirmed_value,
            confirmed_at=checkpoint.confirmed_at,
            discarded=max(0, live_before - session.total_accrued),
        )
        return checkpoint

    def _on_checkpoint_timer(self) -> None:
        session = self.session
        # Snapshot after any tick due at the same instant
        self.clock.once(0, lambda: self._periodic_checkpoint(session))

    def _periodic_checkpoint(self, session: Session) -> None:
        if session is not self.session or session.status != SessionStatus.ACTIVE:
            return
        try:
            self.checkpoint()
        except CheckpointPersistenceFailure as e:
            # Accrual continues; the loss window grows until the next good write
            self.session.last_error = e
            logger.warning(
                "checkpoint_skipped",
                session_id=self.session_id,
                error=e.message,
                last_checkpoint_time=self.session.last_checkpoint_time,
            )

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def on_disconnect(self) -> None:
        """Connection lost: stop ticking and wait for reconnect."""
        session = self.session
        if session.status != SessionStatus.ACTIVE:
            raise InvalidTransition("disconnect", session.status)

        self._cancel_timers()
        session.status = SessionStatus.RECONNECTING
        logger.warning(
            "session_disconnected",
            session_id=self.session_id,
            live_value=session.total_accrued,
            confirmed_value=session.confirmed_value,
        )

        if self.config.auto_reconnect:
            self._reconnect_handle = self.clock.once(
                self.config.reconnect_delay_ms, self._on_reconnect_timer
            )

    def on_reconnect(self) -> None:
        """
        Connection restored: recover from the last checkpoint and resume.

        If recovery fails the session is Failed and the error propagates.
        """
        session = self.session
        if session.status != SessionStatus.RECONNECTING:
            raise InvalidTransition("reconnect", session.status)

        self.clock.stop(self._reconnect_handle)
        self._reconnect_handle = None

        try:
            self.recover()
        except MeteringError as e:
            session.failure_count += 1
            self._mark_failed(session, e)
            raise

        session.status = SessionStatus.ACTIVE
        self._start_timers()
        logger.info(
            "session_reconnected",
            session_id=self.session_id,
            live_value=session.total_accrued,
        )

    def _on_reconnect_timer(self) -> None:
        self._reconnect_handle = None
        try:
            self.on_reconnect()
        except MeteringError as e:
            logger.error("reconnect_failed", session_id=self.session_id, kind=e.kind.value)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def flush_now(self) -> OperationResult:
        """Settle the pending amount immediately."""
        session = self.session
        if self.settlement is None or session.status != SessionStatus.ACTIVE:
            return OperationResult.fail(InvalidTransition("settle", session.status))

        try:
            attempt = await self.settlement.flush()
        except SettlementFailure as e:
            self._handle_settlement_failure(session, e)
            return OperationResult.fail(e, settlement=e.attempt)
        return OperationResult.ok(settlement=attempt)

    def _apply_settlement(self, session: Session, attempt: SettlementAttempt) -> None:
        if session is not self.session:
            logger.warning(
                "settlement_completed_after_reset",
                session_id=self.session_id,
                attempt_id=attempt.attempt_id,
                amount=attempt.amount,
            )
            return
        # recover() may have lowered pending below an in-flight snapshot
        session.pending_amount = max(0, session.pending_amount - attempt.amount)
        session.total_settled += attempt.amount
        session.settlement_count += 1
        session.last_settlement_time = self.now_ms()

    def _handle_settlement_failure(self, session: Session, error: SettlementFailure) -> None:
        if session is not self.session:
            return
        session.failure_count += 1
        session.last_error = error
        # stop() owns the outcome once it has begun settling
        if session.status not in (SessionStatus.ACTIVE, SessionStatus.RECONNECTING):
            return

        self._mark_failed(session, error)

        if self.config.final_flush_on_failure and not session.final_attempt_made:
            session.final_attempt_made = True
            task = asyncio.ensure_future(self._final_flush_after_failure(session))
            self._tasks.append(task)
            task.add_done_callback(self._tasks.remove)

    async def _final_flush_after_failure(self, session: Session) -> None:
        try:
            await self.settlement.flush(final=True)
        except SettlementFailure as e:
            session.failure_count += 1
            session.last_error = e
            logger.error(
                "final_settlement_failed",
                session_id=self.session_id,
                pending_amount=session.pending_amount,
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _mark_failed(self, session: Session, error: MeteringError) -> None:
        self._cancel_timers()
        session.status = SessionStatus.FAILED
        session.last_error = error
        logger.error(
            "session_failed",
            session_id=self.session_id,
            kind=error.kind.value,
            error=error.message,
            pending_amount=session.pending_amount,
            total_settled=session.total_settled,
        )

    def _start_timers(self) -> None:
        self._tick_handle = self.clock.start(self.config.tick_interval_ms, self.on_tick)
        if self.checkpoints is not None:
            self._checkpoint_handle = self.clock.start(
                self.config.checkpoint_interval_ms, self._on_checkpoint_timer
            )
        if self.settlement is not None:
            self.settlement.bind(self.session, self._apply_settlement, self._handle_settlement_failure)
            self.settlement.start()

    def _cancel_timers(self) -> None:
        self.clock.stop(self._tick_handle)
        self.clock.stop(self._checkpoint_handle)
        self.clock.stop(self._reconnect_handle)
        self._tick_handle = None
        self._checkpoint_handle = None
        self._reconnect_handle = None
        if self.settlement is not None:
            self.settlement.stop()

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> SessionStats:
        session = self.session
        duration_ms = 0
        if session.start_time is not None:
            duration_ms = max(0, self.now_ms() - session.start_time)
        rate = session.total_accrued * 60_000 // duration_ms if duration_ms > 0 else 0

        return SessionStats(
            session_id=session.session_id,
            content_id=session.content_id,
            status=session.status,
            pending_amount=session.pending_amount,
            total_settled=session.total_settled,
            total_accrued=session.total_accrued,
            confirmed_value=session.confirmed_value,
            duration_seconds=duration_ms / 1000,
            current_rate_per_minute=rate,
            last_checkpoint_time=session.last_checkpoint_time,
            last_settlement_time=session.last_settlement_time,
            settlement_count=session.settlement_count,
            failure_count=session.failure_count,
            last_error_kind=session.last_error.kind.value if session.last_error else None,
            last_error_message=session.last_error.user_message if session.last_error else None,
        )

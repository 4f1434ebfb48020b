"""
Settlement Scheduler

Periodically commits the pending amount through the PaymentGateway.

flush() snapshots the pending amount before awaiting the gateway and, on
success, the controller subtracts exactly that snapshot. Ticks keep
accruing while the call is in flight; clearing to zero instead would lose
them.

At most one flush is outstanding per session. A scheduled flush that comes
due while one is in flight is skipped, not queued.
"""

import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
import structlog

from billing.gateway import PaymentGateway, PurchaseResult

from .clock import Clock, TickHandle, sleep
from .config import SettlementPolicy
from .errors import SettlementFailure

logger = structlog.get_logger()


def _current_task() -> Optional["asyncio.Task[Any]"]:
    try:
        return asyncio.current_task()
    except RuntimeError:  # no running loop
        return None


class SettlementResult(Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


@dataclass
class SettlementAttempt:
    """One settlement of a snapshot amount (retries included)."""
    attempt_id: str
    session_id: str
    content_id: str
    amount: int
    attempted_at: int  # epoch millis
    result: SettlementResult = SettlementResult.FAILURE
    external_ref: Optional[str] = None
    error_message: Optional[str] = None
    user_message: Optional[str] = None
    tries: int = 0
    final: bool = False

    @property
    def succeeded(self) -> bool:
        return self.result == SettlementResult.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "session_id": self.session_id,
            "content_id": self.content_id,
            "amount": self.amount,
            "attempted_at": self.attempted_at,
            "result": self.result.value,
            "external_ref": self.external_ref,
            "error_message": self.error_message,
            "tries": self.tries,
            "final": self.final,
        }


class SettlementLedger(Protocol):
    """Audit sink for settlement attempts."""

    def record(self, attempt: SettlementAttempt) -> Any:
        ...


class SettlementScheduler:
    """
    Flushes a session's pending amount on a fixed period.

    The scheduler never mutates the session: it reads the pending amount for
    the snapshot and hands outcomes back to the controller via the callbacks
    given to bind().
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        clock: Clock,
        interval_ms: int = 30000,
        policy: Optional[SettlementPolicy] = None,
        timeout_ms: Optional[int] = 30000,
        ledger: Optional[SettlementLedger] = None,
        now_ms: Optional[Callable[[], int]] = None,
    ):
        self.gateway = gateway
        self.clock = clock
        self.interval_ms = interval_ms
        self.policy = policy or SettlementPolicy()
        self.timeout_ms = timeout_ms
        self.ledger = ledger
        self._now_ms = now_ms or (lambda: int(self.clock.now() * 1000))

        self._session: Any = None
        self._on_settled: Optional[Callable[[Any, SettlementAttempt], None]] = None
        self._on_failure: Optional[Callable[[Any, SettlementFailure], None]] = None

        self._handle: Optional[TickHandle] = None
        self._in_flight = False
        self._idle: Optional["asyncio.Future[None]"] = None
        self._tasks: List["asyncio.Task[None]"] = []

        self.attempts: List[SettlementAttempt] = []
        self.skipped = 0

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def running(self) -> bool:
        return self._handle is not None and self._handle.active

    def bind(
        self,
        session: Any,
        on_settled: Callable[[Any, SettlementAttempt], None],
        on_failure: Callable[[Any, SettlementFailure], None],
    ) -> None:
        """Attach the session whose pending amount this scheduler settles."""
        self._session = session
        self._on_settled = on_settled
        self._on_failure = on_failure

    def start(self) -> None:
        if self._session is None:
            raise RuntimeError("SettlementScheduler.start() before bind()")
        self.stop()
        self._handle = self.clock.start(self.interval_ms, self._on_timer)

    def stop(self) -> None:
        """
        Cancel the periodic timer and any scheduled flush that has not
        started yet. An in-flight flush is left to finish.
        """
        self.clock.stop(self._handle)
        self._handle = None
        if self._tasks and not self._in_flight:
            current = _current_task()
            for task in list(self._tasks):
                if task is not current:
                    task.cancel()

    async def wait_idle(self) -> None:
        """Wait until no flush is in flight."""
        if self._idle is not None and not self._idle.done():
            await asyncio.shield(self._idle)

    def _on_timer(self) -> None:
        if self._in_flight:
            self.skipped += 1
            logger.warning(
                "settlement_skipped_in_flight",
                session_id=self._session.session_id,
            )
            return
        if self._session.pending_amount == 0:
            return
        task = asyncio.ensure_future(self._run_scheduled(self._session, self._handle))
        self._tasks.append(task)
        task.add_done_callback(self._tasks.remove)

    async def _run_scheduled(self, session: Any, handle: Optional[TickHandle]) -> None:
        # Timers stopped (or restarted) between spawn and first step
        if handle is None or handle is not self._handle or session is not self._session:
            logger.info("scheduled_settlement_cancelled", session_id=session.session_id)
            return
        try:
            await self.flush()
        except SettlementFailure as exc:
            if self._on_failure is not None:
                self._on_failure(session, exc)

    async def flush(self, final: bool = False) -> Optional[SettlementAttempt]:
        """
        Settle the current pending amount.

        Returns None without calling the gateway when nothing is pending or a
        flush is already in flight.

        Raises:
            SettlementFailure: the gateway rejected the snapshot or timed out;
                the pending amount is untouched
        """
        session = self._session
        if session is None or session.pending_amount == 0:
            return None
        if self._in_flight:
            self.skipped += 1
            logger.warning("settlement_skipped_in_flight", session_id=session.session_id)
            return None

        self._in_flight = True
        self._idle = asyncio.get_running_loop().create_future()
        amount = session.pending_amount
        attempt = SettlementAttempt(
            attempt_id=f"STL-{uuid.uuid4().hex[:16]}",
            session_id=session.session_id,
            content_id=session.content_id,
            amount=amount,
            attempted_at=self._now_ms(),
            final=final,
        )
        logger.info(
            "settlement_started",
            session_id=session.session_id,
            attempt_id=attempt.attempt_id,
            amount=amount,
            final=final,
        )

        try:
            result, tries = await self._purchase_with_policy(session.content_id, amount, attempt.attempt_id)
            attempt.tries = tries
            if result.success:
                attempt.result = SettlementResult.SUCCESS
                attempt.external_ref = result.external_ref
            else:
                attempt.result = SettlementResult.FAILURE
                attempt.error_message = result.error_message
                attempt.user_message = result.user_message

            self.attempts.append(attempt)
            self._record(attempt)

            if attempt.succeeded and self._on_settled is not None:
                self._on_settled(session, attempt)
        finally:
            self._in_flight = False
            if not self._idle.done():
                self._idle.set_result(None)

        if not attempt.succeeded:
            logger.error(
                "settlement_failed",
                session_id=session.session_id,
                attempt_id=attempt.attempt_id,
                amount=amount,
                tries=attempt.tries,
                error=attempt.error_message,
            )
            raise SettlementFailure(
                f"Settlement of {amount} failed: {attempt.error_message}",
                attempt=attempt,
                user_message=attempt.user_message,
            )

        logger.info(
            "settlement_succeeded",
            session_id=session.session_id,
            attempt_id=attempt.attempt_id,
            amount=amount,
            external_ref=attempt.external_ref,
        )
        return attempt

    async def _purchase_with_policy(
        self,
        content_id: str,
        amount: int,
        idempotency_key: str,
    ) -> Tuple[PurchaseResult, int]:
        tries = 0
        while True:
            tries += 1
            result = await self._call_gateway(content_id, amount, idempotency_key)
            if result.success or tries > self.policy.max_retries:
                return result, tries

            delay_ms = self.policy.backoff_for(tries)
            logger.warning(
                "settlement_retry_scheduled",
                content_id=content_id,
                amount=amount,
                retry=tries,
                delay_ms=delay_ms,
                error=result.error_message,
            )
            await sleep(self.clock.scheduler, delay_ms / 1000)

    async def _call_gateway(
        self,
        content_id: str,
        amount: int,
        idempotency_key: str,
    ) -> PurchaseResult:
        try:
            call = self.gateway.purchase(content_id, amount, idempotency_key=idempotency_key)
            if self.timeout_ms is None:
                return await call
            return await asyncio.wait_for(call, timeout=self.timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.error("settlement_timeout", content_id=content_id, timeout_ms=self.timeout_ms)
            return PurchaseResult(
                success=False,
                error_message=f"Settlement timed out after {self.timeout_ms}ms",
            )
        except Exception as e:
            logger.error("settlement_gateway_error", content_id=content_id, error=str(e))
            return PurchaseResult(success=False, error_message=str(e))

    def _record(self, attempt: SettlementAttempt) -> None:
        if self.ledger is None:
            return
        try:
            self.ledger.record(attempt)
        except Exception as e:
            # The ledger is an audit trail; a settled payment stands regardless
            logger.error(
                "settlement_record_failed",
                attempt_id=attempt.attempt_id,
                error=str(e),
            )

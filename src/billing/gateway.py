"""
Payment Gateway Interface

The engine settles accrued value through PaymentGateway.purchase(). The
gateway owns everything ledger-side (transaction construction, signing,
broadcast, confirmation) and is solely responsible for idempotency at the
ledger layer.

SimulatedLedgerGateway is an in-process ledger with viewer balances and a
platform fee split, used by the API server, the demo and the tests.
"""

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol
import structlog

logger = structlog.get_logger()


class ContractError(Enum):
    """Ledger contract error codes."""
    INSUFFICIENT_PAYMENT = 2001
    PAYMENT_FAILED = 2002
    CONTRACT_PAUSED = 4002
    INVALID_INPUT = 4003


ERROR_MESSAGES = {
    ContractError.INSUFFICIENT_PAYMENT: "Insufficient payment",
    ContractError.PAYMENT_FAILED: "Payment failed",
    ContractError.CONTRACT_PAUSED: "Contract is paused",
    ContractError.INVALID_INPUT: "Invalid input",
}


def get_error_message(code: Optional[ContractError]) -> str:
    """User-facing message for a contract error code."""
    if code is None:
        return "Unknown error"
    return ERROR_MESSAGES.get(code, "Unknown error")


@dataclass
class PurchaseResult:
    """Outcome of a gateway purchase."""
    success: bool
    external_ref: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[ContractError] = None

    @classmethod
    def ok(cls, external_ref: str) -> "PurchaseResult":
        return cls(success=True, external_ref=external_ref)

    @classmethod
    def failed(
        cls,
        code: ContractError,
        message: Optional[str] = None,
    ) -> "PurchaseResult":
        return cls(
            success=False,
            error_message=message or get_error_message(code),
            error_code=code,
        )

    @property
    def user_message(self) -> str:
        if self.error_code is not None:
            return get_error_message(self.error_code)
        return self.error_message or "Payment failed"


class PaymentGateway(Protocol):
    """Ledger settlement collaborator."""

    async def purchase(
        self,
        content_id: str,
        amount: int,
        idempotency_key: Optional[str] = None,
    ) -> PurchaseResult:
        ...


@dataclass
class LedgerPayment:
    """A payment accepted by the simulated ledger."""
    tx_id: str
    content_id: str
    viewer: str
    amount: int
    creator_share: int
    platform_share: int
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "content_id": self.content_id,
            "viewer": self.viewer,
            "amount": self.amount,
            "creator_share": self.creator_share,
            "platform_share": self.platform_share,
            "timestamp": self.timestamp,
        }


class SimulatedLedgerGateway:
    """
    In-process ledger standing in for the payment processor contract.

    One instance represents one viewer wallet. Payments debit the wallet
    and split into creator earnings and platform treasury by the fee in
    basis points.
    """

    DEFAULT_FEE_BPS = 250  # 2.5%

    def __init__(
        self,
        viewer: str = "viewer",
        balance: int = 10 ** 12,
        platform_fee_bps: int = DEFAULT_FEE_BPS,
        latency_seconds: float = 0.0,
    ):
        if not 0 <= platform_fee_bps <= 10000:
            raise ValueError("platform_fee_bps must be between 0 and 10000")
        self.viewer = viewer
        self.balance = balance
        self.platform_fee_bps = platform_fee_bps
        self.latency_seconds = latency_seconds
        self.paused = False

        self.creator_earnings: Dict[str, int] = {}
        self.platform_treasury = 0
        self.payments: List[LedgerPayment] = []
        self.calls = 0
        self._forced_failures: List[ContractError] = []
        self._accepted_keys: Dict[str, str] = {}

    def fail_next(self, count: int = 1, code: ContractError = ContractError.PAYMENT_FAILED) -> None:
        """Reject the next `count` purchases with `code`."""
        self._forced_failures.extend([code] * count)

    def calculate_revenue_split(self, amount: int) -> Dict[str, int]:
        platform_share = amount * self.platform_fee_bps // 10000
        return {
            "creator_share": amount - platform_share,
            "platform_share": platform_share,
        }

    async def purchase(
        self,
        content_id: str,
        amount: int,
        idempotency_key: Optional[str] = None,
    ) -> PurchaseResult:
        self.calls += 1
        if idempotency_key is not None and idempotency_key in self._accepted_keys:
            logger.info("ledger_duplicate_purchase", idempotency_key=idempotency_key)
            return PurchaseResult.ok(self._accepted_keys[idempotency_key])

        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)

        if self._forced_failures:
            code = self._forced_failures.pop(0)
            logger.warning("ledger_purchase_rejected", content_id=content_id, code=code.name)
            return PurchaseResult.failed(code)

        if self.paused:
            return PurchaseResult.failed(ContractError.CONTRACT_PAUSED)
        if amount <= 0:
            return PurchaseResult.failed(ContractError.INVALID_INPUT)
        if amount > self.balance:
            logger.warning(
                "ledger_insufficient_funds",
                viewer=self.viewer,
                amount=amount,
                balance=self.balance,
            )
            return PurchaseResult.failed(ContractError.INSUFFICIENT_PAYMENT)

        split = self.calculate_revenue_split(amount)
        self.balance -= amount
        self.creator_earnings[content_id] = (
            self.creator_earnings.get(content_id, 0) + split["creator_share"]
        )
        self.platform_treasury += split["platform_share"]

        payment = LedgerPayment(
            tx_id="0x" + secrets.token_hex(32),
            content_id=content_id,
            viewer=self.viewer,
            amount=amount,
            creator_share=split["creator_share"],
            platform_share=split["platform_share"],
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        self.payments.append(payment)
        if idempotency_key is not None:
            self._accepted_keys[idempotency_key] = payment.tx_id

        logger.info(
            "ledger_payment_accepted",
            tx_id=payment.tx_id,
            content_id=content_id,
            amount=amount,
        )
        return PurchaseResult.ok(payment.tx_id)

    def get_creator_earnings(self, content_id: str) -> int:
        return self.creator_earnings.get(content_id, 0)

"""
Fixed-Point Amounts

All balances are integers in minor units (1 unit = 1_000_000 minor units,
the micro-STX convention). Accrual keeps the division remainder between
ticks so that long sessions never drift from the exact total.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_DOWN

from .errors import AccrualError

MINOR_DECIMALS = 6
MINOR_UNITS = 10 ** MINOR_DECIMALS
MS_PER_MINUTE = 60_000

# Ledger uint ceiling
MAX_AMOUNT = 2 ** 128 - 1


@dataclass(frozen=True)
class AccrualRate:
    """Accrual rate in minor units per minute."""
    per_minute: int

    def __post_init__(self):
        if isinstance(self.per_minute, bool) or not isinstance(self.per_minute, int):
            raise AccrualError(f"Rate must be an integer, got {self.per_minute!r}")
        if self.per_minute < 0:
            raise AccrualError(f"Rate must be non-negative, got {self.per_minute}")
        if self.per_minute > MAX_AMOUNT:
            raise AccrualError("Rate exceeds maximum amount")

    @classmethod
    def per_second(cls, amount: int) -> "AccrualRate":
        """Build a rate from minor units per second."""
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise AccrualError(f"Rate must be an integer, got {amount!r}")
        return cls(per_minute=amount * 60)


class Accrual:
    """
    Exact per-tick accrual.

    Each tick adds floor((carry + rate * interval_ms) / 60000) and keeps the
    remainder, so after n ticks the total is floor(n * rate * interval_ms / 60000).
    """

    def __init__(self, rate: AccrualRate, interval_ms: int):
        if interval_ms <= 0:
            raise AccrualError(f"Tick interval must be positive, got {interval_ms}")
        self.rate = rate
        self.interval_ms = interval_ms
        self._carry = 0

    def next_increment(self) -> int:
        increment, self._carry = divmod(
            self._carry + self.rate.per_minute * self.interval_ms,
            MS_PER_MINUTE,
        )
        return increment

    def reset(self) -> None:
        self._carry = 0


def checked_add(current: int, increment: int) -> int:
    """Add two amounts, raising AccrualError past the ledger ceiling."""
    total = current + increment
    if total < 0 or total > MAX_AMOUNT:
        raise AccrualError(f"Amount out of range: {current} + {increment}")
    return total


def format_amount(minor: int, decimals: int = MINOR_DECIMALS, places: int = 2) -> str:
    """
    Format minor units as a display string, truncating to `places`.

    `decimals` is the number of minor-unit digits per whole unit:
    format_amount(1_500_000) -> '1.50', format_amount(150, decimals=2) -> '1.50'.
    """
    quantum = Decimal(1).scaleb(-places)
    value = Decimal(minor).scaleb(-decimals).quantize(quantum, rounding=ROUND_DOWN)
    return f"{value:.{places}f}"


def parse_amount(text: str, decimals: int = MINOR_DECIMALS) -> int:
    """Parse a display amount into minor units, truncating extra precision."""
    try:
        value = Decimal(text.strip())
    except (InvalidOperation, AttributeError):
        raise ValueError(f"Invalid amount: {text!r}")
    if value < 0:
        raise ValueError(f"Amount must be non-negative: {text!r}")
    return int(value.scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))

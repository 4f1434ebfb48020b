"""
Data Models for Persistence Layer

These models mirror the settlement domain objects but are shaped for
database storage.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class SettlementRecord:
    """Persisted settlement attempt."""
    attempt_id: str
    session_id: str
    content_id: str
    amount: int
    attempted_at: int  # epoch millis
    result: str  # SUCCESS / FAILURE
    external_ref: Optional[str] = None
    error_message: Optional[str] = None
    tries: int = 1
    final: bool = False

    @property
    def succeeded(self) -> bool:
        return self.result == "SUCCESS"

    @classmethod
    def from_attempt(cls, attempt: Any) -> "SettlementRecord":
        """Build a record from a metering.settlement.SettlementAttempt."""
        return cls(
            attempt_id=attempt.attempt_id,
            session_id=attempt.session_id,
            content_id=attempt.content_id,
            amount=attempt.amount,
            attempted_at=attempt.attempted_at,
            result=attempt.result.value,
            external_ref=attempt.external_ref,
            error_message=attempt.error_message,
            tries=attempt.tries,
            final=attempt.final,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "session_id": self.session_id,
            "content_id": self.content_id,
            "amount": self.amount,
            "attempted_at": self.attempted_at,
            "result": self.result,
            "external_ref": self.external_ref,
            "error_message": self.error_message,
            "tries": self.tries,
            "final": self.final,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.attempt_id,
            self.session_id,
            self.content_id,
            str(self.amount),
            self.attempted_at,
            self.result,
            self.external_ref,
            self.error_message,
            self.tries,
            1 if self.final else 0,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SettlementRecord":
        return cls(
            attempt_id=row["attempt_id"],
            session_id=row["session_id"],
            content_id=row["content_id"],
            amount=int(row["amount"]),
            attempted_at=row["attempted_at"],
            result=row["result"],
            external_ref=row.get("external_ref"),
            error_message=row.get("error_message"),
            tries=row.get("tries", 1),
            final=bool(row.get("final", 0)),
        )

"""
Repository Layer

Settlement audit trail: every gateway attempt, successful or not.
"""

from typing import Any, Dict, List, Optional
import structlog

from .database import Database, get_database
from .models import SettlementRecord

logger = structlog.get_logger()


class SettlementRepository:
    """Repository for settlement attempts (implements SettlementLedger)."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.db.initialize()

    def create(self, record: SettlementRecord) -> SettlementRecord:
        """Insert a settlement record."""
        self.db.execute(
            """INSERT INTO settlement_attempts
               (attempt_id, session_id, content_id, amount, attempted_at,
                result, external_ref, error_message, tries, final)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )
        return record

    def record(self, attempt: Any) -> SettlementRecord:
        """Persist a SettlementAttempt."""
        record = self.create(SettlementRecord.from_attempt(attempt))
        logger.info(
            "settlement_recorded",
            attempt_id=record.attempt_id,
            session_id=record.session_id,
            result=record.result,
            amount=record.amount,
        )
        return record

    def get(self, attempt_id: str) -> Optional[SettlementRecord]:
        results = self.db.execute(
            "SELECT * FROM settlement_attempts WHERE attempt_id = ?",
            (attempt_id,)
        )
        return SettlementRecord.from_row(results[0]) if results else None

    def get_by_session(self, session_id: str, limit: int = 1000) -> List[SettlementRecord]:
        """Get attempts for a session, oldest first."""
        results = self.db.execute(
            """SELECT * FROM settlement_attempts WHERE session_id = ?
               ORDER BY attempted_at ASC, rowid ASC LIMIT ?""",
            (session_id, limit)
        )
        return [SettlementRecord.from_row(r) for r in results]

    def get_failures(self, limit: int = 100) -> List[SettlementRecord]:
        results = self.db.execute(
            """SELECT * FROM settlement_attempts WHERE result = 'FAILURE'
               ORDER BY attempted_at DESC LIMIT ?""",
            (limit,)
        )
        return [SettlementRecord.from_row(r) for r in results]

    def list_sessions(self) -> List[str]:
        results = self.db.execute(
            "SELECT DISTINCT session_id FROM settlement_attempts ORDER BY session_id"
        )
        return [r["session_id"] for r in results]

    def get_session_summary(self, session_id: str) -> Dict[str, Any]:
        """Summarise settlements for a session."""
        records = self.get_by_session(session_id, limit=100000)
        succeeded = [r for r in records if r.succeeded]

        return {
            "session_id": session_id,
            "attempts": len(records),
            "successes": len(succeeded),
            "failures": len(records) - len(succeeded),
            "total_settled": sum(r.amount for r in succeeded),
            "last_attempt_at": records[-1].attempted_at if records else None,
        }

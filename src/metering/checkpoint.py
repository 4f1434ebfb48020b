"""
Checkpoint Store

A checkpoint is the last value guaranteed not to be lost. It is written on
its own cadence and read back only by recover(). Anything accrued after
the last checkpoint is discarded on recovery: bounded loss in exchange for
never fabricating unconfirmed value.

Stored checkpoints are validated on read. A record that fails to parse is
RecoveryDataCorruption, never "no checkpoint".
"""

from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from persistence.kv import KVStore

from .amounts import MAX_AMOUNT
from .errors import CheckpointPersistenceFailure, RecoveryDataCorruption

logger = structlog.get_logger()

CHECKPOINT_SCHEMA_VERSION = 1


class Checkpoint(BaseModel):
    """Persisted checkpoint: integer minor units and epoch millis."""

    model_config = ConfigDict(strict=True, extra="forbid", frozen=True)

    session_id: str = Field(min_length=1)
    content_id: Optional[str] = None
    confirmed_value: int
    confirmed_at: int = Field(ge=0)
    schema_version: int = CHECKPOINT_SCHEMA_VERSION

    @field_validator("confirmed_value")
    @classmethod
    def _within_ledger_range(cls, value: int) -> int:
        if value < 0 or value > MAX_AMOUNT:
            raise ValueError("confirmed_value out of range")
        return value


class CheckpointStore:
    """Durable checkpoints keyed by session id (single writer per key)."""

    KEY_PREFIX = "checkpoint:"

    def __init__(self, kv: KVStore):
        self.kv = kv

    def key_for(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}{session_id}"

    def save(
        self,
        session_id: str,
        confirmed_value: int,
        confirmed_at: int,
        content_id: Optional[str] = None,
    ) -> Checkpoint:
        """
        Persist a checkpoint.

        Raises:
            CheckpointPersistenceFailure: the store rejected the write
        """
        checkpoint = Checkpoint(
            session_id=session_id,
            content_id=content_id,
            confirmed_value=confirmed_value,
            confirmed_at=confirmed_at,
        )
        try:
            self.kv.set(self.key_for(session_id), checkpoint.model_dump_json())
        except Exception as e:
            logger.error("checkpoint_write_failed", session_id=session_id, error=str(e))
            raise CheckpointPersistenceFailure(
                f"Failed to write checkpoint for {session_id}: {e}"
            ) from e

        logger.info(
            "checkpoint_created",
            session_id=session_id,
            confirmed_value=confirmed_value,
            confirmed_at=confirmed_at,
        )
        return checkpoint

    def load(self, session_id: str) -> Optional[Checkpoint]:
        """
        Read the last checkpoint, or None if there is none.

        Raises:
            CheckpointPersistenceFailure: the store could not be read
            RecoveryDataCorruption: the stored record is invalid
        """
        try:
            raw = self.kv.get(self.key_for(session_id))
        except Exception as e:
            logger.error("checkpoint_read_failed", session_id=session_id, error=str(e))
            raise CheckpointPersistenceFailure(
                f"Failed to read checkpoint for {session_id}: {e}"
            ) from e

        if raw is None:
            return None
        if not isinstance(raw, (str, bytes)):
            raise RecoveryDataCorruption(
                f"Stored checkpoint for {session_id} is not a JSON document"
            )

        try:
            checkpoint = Checkpoint.model_validate_json(raw)
        except ValidationError as e:
            logger.error("checkpoint_corrupt", session_id=session_id, error=str(e))
            raise RecoveryDataCorruption(
                f"Stored checkpoint for {session_id} is invalid: {e.error_count()} error(s)"
            ) from e

        if checkpoint.session_id != session_id:
            logger.error(
                "checkpoint_corrupt",
                session_id=session_id,
                stored_session_id=checkpoint.session_id,
            )
            raise RecoveryDataCorruption(
                f"Stored checkpoint under {session_id} belongs to {checkpoint.session_id}"
            )
        if checkpoint.schema_version != CHECKPOINT_SCHEMA_VERSION:
            raise RecoveryDataCorruption(
                f"Unsupported checkpoint schema version {checkpoint.schema_version}"
            )

        return checkpoint

    def erase(self, session_id: str) -> None:
        """Delete the stored checkpoint."""
        try:
            self.kv.delete(self.key_for(session_id))
        except Exception as e:
            logger.error("checkpoint_erase_failed", session_id=session_id, error=str(e))
            raise CheckpointPersistenceFailure(
                f"Failed to erase checkpoint for {session_id}: {e}"
            ) from e
        logger.info("checkpoint_erased", session_id=session_id)

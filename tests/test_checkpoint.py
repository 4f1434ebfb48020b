"""
Tests for the Checkpoint Store

Stored checkpoints are validated on read; corrupt data is never mistaken
for "no checkpoint".
"""

import json
import pytest
from pydantic import ValidationError

from metering.checkpoint import CheckpointStore
from metering.errors import CheckpointPersistenceFailure, RecoveryDataCorruption


class TestCheckpointStore:
    """Test save/load/erase."""

    def test_save_and_load(self, checkpoint_store):
        checkpoint_store.save("s1", 42, 5000, content_id="film")

        checkpoint = checkpoint_store.load("s1")

        assert checkpoint.confirmed_value == 42
        assert checkpoint.confirmed_at == 5000
        assert checkpoint.content_id == "film"

    def test_key_layout(self, checkpoint_store, kv):
        checkpoint_store.save("s1", 1, 2)

        stored = json.loads(kv.get("checkpoint:s1"))

        assert stored["confirmed_value"] == 1
        assert stored["confirmed_at"] == 2

    def test_missing_is_none(self, checkpoint_store):
        assert checkpoint_store.load("nothing") is None

    def test_overwrite(self, checkpoint_store):
        checkpoint_store.save("s1", 10, 1000)
        checkpoint_store.save("s1", 20, 2000)

        assert checkpoint_store.load("s1").confirmed_value == 20

    def test_large_values(self, checkpoint_store):
        """uint128-sized values survive JSON storage."""
        value = 2 ** 127 + 12345
        checkpoint_store.save("s1", value, 1)

        assert checkpoint_store.load("s1").confirmed_value == value

    def test_erase(self, checkpoint_store, kv):
        checkpoint_store.save("s1", 10, 1000)

        checkpoint_store.erase("s1")

        assert "checkpoint:s1" not in kv
        assert checkpoint_store.load("s1") is None


class TestCorruption:
    """Test validation on read."""

    @pytest.mark.parametrize("raw", [
        "not json",
        "{}",
        '{"session_id": "s1", "confirmed_value": "10", "confirmed_at": 0}',
        '{"session_id": "s1", "confirmed_value": -1, "confirmed_at": 0}',
        '{"session_id": "s1", "confirmed_value": 1.5, "confirmed_at": 0}',
        '{"session_id": "s1", "confirmed_value": 10, "confirmed_at": -5}',
        '{"session_id": "s1", "confirmed_value": 10, "confirmed_at": 0, "extra": 1}',
        '{"session_id": "s1", "confirmed_value": 10, "confirmed_at": 0, "schema_version": 2}',
    ])
    def test_invalid_records(self, checkpoint_store, kv, raw):
        kv.set("checkpoint:s1", raw)

        with pytest.raises(RecoveryDataCorruption):
            checkpoint_store.load("s1")

    def test_session_mismatch(self, checkpoint_store, kv):
        kv.set("checkpoint:s1", '{"session_id": "s2", "confirmed_value": 10, "confirmed_at": 0}')

        with pytest.raises(RecoveryDataCorruption):
            checkpoint_store.load("s1")


class TestStoreFailures:
    """Test backing store errors."""

    def test_write_failure(self, checkpoint_store, kv):
        kv.fail_writes = True

        with pytest.raises(CheckpointPersistenceFailure):
            checkpoint_store.save("s1", 10, 1000)

    def test_read_failure(self, checkpoint_store, kv):
        kv.fail_reads = True

        with pytest.raises(CheckpointPersistenceFailure):
            checkpoint_store.load("s1")

    def test_erase_failure(self, checkpoint_store, kv):
        kv.fail_writes = True

        with pytest.raises(CheckpointPersistenceFailure):
            checkpoint_store.erase("s1")

    def test_invalid_value_rejected_before_write(self, kv):
        """A negative value never reaches the store."""
        store = CheckpointStore(kv)

        with pytest.raises(ValidationError):
            store.save("s1", -1, 0)

        assert "checkpoint:s1" not in kv

"""
Stream Meter - Metering Engine

Per-session accrual of streamed value with bounded-loss checkpoints and
batched settlement:
- Fixed-point accrual on a tick clock
- Durable checkpoints with validated recovery
- Snapshot-and-subtract settlement with a fail-stop policy
"""

from .amounts import (
    MAX_AMOUNT,
    MINOR_UNITS,
    Accrual,
    AccrualRate,
    checked_add,
    format_amount,
    parse_amount,
)
from .checkpoint import Checkpoint, CheckpointStore
from .clock import Clock, ManualScheduler, TickHandle
from .config import EngineConfig, SettlementPolicy
from .errors import (
    AccessDenied,
    AccrualError,
    CheckpointPersistenceFailure,
    ErrorKind,
    InvalidTransition,
    MeteringError,
    RecoveryDataCorruption,
    SettlementFailure,
    UnknownContent,
)
from .faults import FaultSimulator, NoFaults, RandomFaultSimulator, ScriptedFaultSimulator
from .session import (
    OperationResult,
    Session,
    SessionController,
    SessionStats,
    SessionStatus,
)
from .settlement import SettlementAttempt, SettlementResult, SettlementScheduler

__all__ = [
    "MAX_AMOUNT",
    "MINOR_UNITS",
    "Accrual",
    "AccrualRate",
    "checked_add",
    "format_amount",
    "parse_amount",
    "Checkpoint",
    "CheckpointStore",
    "Clock",
    "ManualScheduler",
    "TickHandle",
    "EngineConfig",
    "SettlementPolicy",
    "AccessDenied",
    "AccrualError",
    "CheckpointPersistenceFailure",
    "ErrorKind",
    "InvalidTransition",
    "MeteringError",
    "RecoveryDataCorruption",
    "SettlementFailure",
    "UnknownContent",
    "FaultSimulator",
    "NoFaults",
    "RandomFaultSimulator",
    "ScriptedFaultSimulator",
    "OperationResult",
    "Session",
    "SessionController",
    "SessionStats",
    "SessionStatus",
    "SettlementAttempt",
    "SettlementResult",
    "SettlementScheduler",
]

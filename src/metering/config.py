"""
Engine Configuration

Cadences and failure policy for a metering session. Defaults follow the
streaming client: 1s ticks, 10s checkpoints, 30s settlement batches and a
2s reconnect delay.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional


@dataclass
class SettlementPolicy:
    """
    Retry policy for settlement attempts.

    max_retries=0 is fail-stop: the first failure transitions the session
    to Failed. With retries, the same snapshot is retried with exponential
    backoff inside a single in-flight attempt.
    """
    max_retries: int = 0
    backoff_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_backoff_ms: int = 30000

    def backoff_for(self, retry_number: int) -> int:
        """Backoff in ms before retry `retry_number` (1-based)."""
        delay = self.backoff_ms * (self.backoff_multiplier ** (retry_number - 1))
        return int(min(delay, self.max_backoff_ms))


@dataclass
class EngineConfig:
    """Configuration for a metering session."""
    tick_interval_ms: int = 1000
    checkpoint_interval_ms: int = 10000
    settlement_interval_ms: int = 30000
    reconnect_delay_ms: int = 2000
    settlement_timeout_ms: Optional[int] = 30000  # None disables the timeout
    auto_reconnect: bool = True
    final_flush_on_failure: bool = False
    policy: SettlementPolicy = field(default_factory=SettlementPolicy)

    def __post_init__(self):
        for name in ("tick_interval_ms", "checkpoint_interval_ms",
                     "settlement_interval_ms", "reconnect_delay_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.policy.max_retries < 0:
            raise ValueError("max_retries must be non-negative")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """
        Build configuration from METER_* environment variables.

        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def _int(name: str, default: Optional[int]) -> Optional[int]:
            raw = env.get(name)
            if raw is None or raw == "":
                return default
            return int(raw)

        def _bool(name: str, default: bool) -> bool:
            raw = env.get(name)
            if raw is None or raw == "":
                return default
            return raw.strip().lower() in ("1", "true", "yes", "on")

        timeout = _int("METER_SETTLEMENT_TIMEOUT_MS", defaults.settlement_timeout_ms)
        policy = SettlementPolicy(
            max_retries=_int("METER_SETTLEMENT_MAX_RETRIES", defaults.policy.max_retries),
            backoff_ms=_int("METER_SETTLEMENT_BACKOFF_MS", defaults.policy.backoff_ms),
            backoff_multiplier=float(env.get(
                "METER_SETTLEMENT_BACKOFF_MULTIPLIER", defaults.policy.backoff_multiplier
            )),
            max_backoff_ms=_int("METER_SETTLEMENT_MAX_BACKOFF_MS", defaults.policy.max_backoff_ms),
        )

        return cls(
            tick_interval_ms=_int("METER_TICK_INTERVAL_MS", defaults.tick_interval_ms),
            checkpoint_interval_ms=_int("METER_CHECKPOINT_INTERVAL_MS", defaults.checkpoint_interval_ms),
            settlement_interval_ms=_int("METER_SETTLEMENT_INTERVAL_MS", defaults.settlement_interval_ms),
            reconnect_delay_ms=_int("METER_RECONNECT_DELAY_MS", defaults.reconnect_delay_ms),
            settlement_timeout_ms=timeout if timeout and timeout > 0 else None,
            auto_reconnect=_bool("METER_AUTO_RECONNECT", defaults.auto_reconnect),
            final_flush_on_failure=_bool("METER_FINAL_FLUSH_ON_FAILURE", defaults.final_flush_on_failure),
            policy=policy,
        )

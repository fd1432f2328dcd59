"""
Failure taxonomy for the monitor.

Every runtime failure is cycle-local: the scheduler catches it, logs it and
moves on to the next tick. Only ConfigError is fatal, and only at startup.
"""

from __future__ import annotations

from typing import Optional


class MonitorError(RuntimeError):
    """Base class for all monitor failures."""


class ConfigError(MonitorError):
    """Raised when the configuration is incomplete or invalid."""


class OracleFailure(MonitorError):
    """A venue could not produce a quote."""

    kind = "oracle"

    def __init__(self, venue: str, message: str = "", cause: Optional[BaseException] = None) -> None:
        self.venue = venue
        self.cause = cause
        super().__init__(f"{self.kind} venue={venue}: {message}" if message else f"{self.kind} venue={venue}")


class Unreachable(OracleFailure):
    """Network/transport failure or timeout."""

    kind = "Unreachable"


class Malformed(OracleFailure):
    """The response could not be decoded into an output amount."""

    kind = "Malformed"


class Reverted(OracleFailure):
    """The remote computation signalled an error (e.g. insufficient liquidity)."""

    kind = "Reverted"


class EvaluationFailure(MonitorError):
    kind = "evaluation"


class IncomparableQuotes(EvaluationFailure):
    """Quotes were sampled for different input amounts or the same venue."""

    kind = "IncomparableQuotes"


class StoreFailure(MonitorError):
    kind = "store"


class WriteFailure(StoreFailure):
    """Storage unavailable, disk full or schema mismatch."""

    kind = "WriteFailure"

"""Exception hierarchy for the VWAP engine.

This module defines all custom exceptions used throughout the engine.
All exceptions inherit from VwapSystemError for easy catching and handling.
"""

from typing import Any, Dict


class VwapSystemError(Exception):
    """Base exception for all VWAP engine errors.

    All custom exceptions in the engine inherit from this class,
    allowing for easy catching of any engine related errors.
    """

    def __init__(self, message: str, **context: Any):
        """Initialize the exception with a message and optional context.

        Args:
            message: Error message describing what went wrong
            **context: Additional context information for logging and debugging
        """
        super().__init__(message)
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        """Return string representation including context."""
        if self.context:
            ctx = ', '.join(f'{k}={v}' for k, v in self.context.items())
            return f"{super().__str__()} [{ctx}]"
        return super().__str__()


# ============================================================================
# Configuration Exceptions
# ============================================================================

class InvalidConfigError(VwapSystemError):
    """Raised when configuration contains invalid values.

    Negative intervals, unknown publisher kinds, or values of the wrong
    type all end up here.
    """


class MissingConfigError(VwapSystemError):
    """Raised when required configuration is missing.

    Raised when a mandatory section or key is not found in the
    configuration file.
    """


class PolicyValidationError(InvalidConfigError):
    """Raised when a filter policy document is malformed.

    A policy that names both a venue include and exclude list, an unknown
    correction mode, or an unparseable session window is rejected before
    any aggregator is built from it.
    """


# ============================================================================
# Feed / Connection Exceptions
# ============================================================================

class FeedConnectionError(VwapSystemError):
    """Base class for feed-session errors.

    Named FeedConnectionError to avoid conflict with built-in ConnectionError.
    """


class SessionLostError(FeedConnectionError):
    """Raised when the upstream feed session drops.

    Recoverable: drives the affected instruments into the Disconnected
    state until the session is restored.
    """


class HeartbeatTimeoutError(FeedConnectionError):
    """Raised when the feed stops answering heartbeats."""


# ============================================================================
# Sequencing / Backfill Exceptions
# ============================================================================

class SequencingError(VwapSystemError):
    """Base class for sequence continuity errors."""


class SequenceGapUnresolvedError(SequencingError):
    """A gap could not be filled before the pipeline moved past it.

    Never raised through the live path; it is built and logged so the
    operator sees the instrument and the missing range, and the instrument
    is marked as provisional accuracy.
    """


class BackfillError(SequencingError):
    """Base class for backfill failures."""


class BackfillTimeoutError(BackfillError):
    """Raised when a single backfill attempt exceeds its timeout.

    Retried with exponential backoff up to the configured bound.
    """


class BackfillExhaustedError(BackfillError):
    """Raised when a backfill used up its retry budget.

    The instrument transitions to Stalled and stays there until an
    operator clears it.
    """


# ============================================================================
# Data Exceptions
# ============================================================================

class DataValidationError(VwapSystemError):
    """Raised when an incoming record fails validation.

    Missing fields, negative volume, non-positive price or an unparseable
    timestamp. The record is rejected at the feed boundary.
    """


# ============================================================================
# Log Exceptions
# ============================================================================

class LogError(VwapSystemError):
    """Base class for ordered-log errors."""


class LogUnavailableError(LogError):
    """Raised when the ordered log cannot be read or written.

    The aggregator suspends and resubscribes from its last acknowledged
    position once the log is back.
    """


class LogUnavailableFatalError(LogError):
    """Raised when the log stays unavailable beyond the grace period.

    This is the only fatal condition: it triggers process-level restart
    and alerting.
    """


# ============================================================================
# State Exceptions
# ============================================================================

class StateError(VwapSystemError):
    """Base class for snapshot/checkpoint errors."""


class CheckpointWriteError(StateError):
    """Raised when a snapshot cannot be persisted.

    Non-fatal: the next interval retries, and replay from the log is
    always available as a correctness fallback.
    """


class StateCorruptedError(StateError):
    """Raised when a snapshot file cannot be parsed or fails validation."""


class StateLoadError(StateError):
    """Raised when loading a snapshot fails for reasons other than corruption."""

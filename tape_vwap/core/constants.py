"""System-wide constants and enumerations for the VWAP engine.

This module defines all constants, enumerations, and default values used
throughout the engine. Components read their configuration section with
``.get(key, DEFAULT)`` so these values are the effective defaults whenever
a key is absent from the YAML config.
"""

from decimal import Context, ROUND_HALF_EVEN
from enum import Enum


# ============================================================================
# Enumerations
# ============================================================================

class Provenance(str, Enum):
    """Where a record came from.

    - LIVE: streamed by the feed session in real time
    - HISTORICAL: returned by a backfill query
    """
    LIVE = "live"
    HISTORICAL = "historical"


class CursorState(str, Enum):
    """Per-instrument sequencing state owned by the gap detector.

    State transitions:
    LIVE → DISCONNECTED → BACKFILLING → RECONCILING → LIVE
                               ↓
                            STALLED (manual clear only)
    """
    LIVE = "Live"
    DISCONNECTED = "Disconnected"
    BACKFILLING = "Backfilling"
    RECONCILING = "Reconciling"
    STALLED = "Stalled"


class CorrectionAction(str, Enum):
    """Action carried by a trade correction."""
    CANCEL = "cancel"
    AMEND = "amend"


class CorrectionMode(str, Enum):
    """How an aggregator treats corrections under its filter policy.

    - APPLY: reverse the original, then add the amendment if it passes
    - CANCEL_ONLY: reverse the original, never add an amendment
    - IGNORE: corrections are no-ops
    """
    APPLY = "apply"
    CANCEL_ONLY = "cancel_only"
    IGNORE = "ignore"


class RejectReason(str, Enum):
    """Reasons the gap detector refuses a record at the feed boundary."""
    INVALID = "invalid"
    DUPLICATE = "duplicate"
    STALLED = "stalled"
    LATE = "late"


class RecordKind(str, Enum):
    """Discriminator for log envelopes."""
    TICK = "tick"
    CORRECTION = "correction"


class Environment(str, Enum):
    """Enumeration of deployment environments."""
    DEV = "dev"
    PAPER = "paper"
    LIVE = "live"


# ============================================================================
# Arithmetic
# ============================================================================

ARITHMETIC_CONTEXT: Context = Context(prec=50, rounding=ROUND_HALF_EVEN)
"""Decimal context for every cumulative volume/notional operation.

A fixed, explicit context keeps rounding identical across processes, threads
and replays regardless of whatever the thread-local default context is.
"""

VWAP_DISPLAY_PLACES: int = 4
"""Decimal places used when a VWAP is rendered for humans or the wire."""


# ============================================================================
# Gap Detection Defaults
# ============================================================================

DEFAULT_REORDER_WINDOW: int = 64
"""Maximum out-of-order ticks held per instrument while a gap is open.

When the buffer would exceed this, buffered ticks are emitted in order and
flagged as past an unresolved gap.
"""


# ============================================================================
# Backfill Defaults
# ============================================================================

BACKFILL_TIMEOUT_SECONDS: float = 10.0
"""Upper bound on a single backfill query attempt."""

BACKFILL_MAX_RETRIES: int = 5
"""Attempts after the first before the instrument is declared Stalled."""

BACKFILL_BACKOFF_BASE_SECONDS: float = 0.5
"""First retry delay; doubles on each subsequent attempt."""

BACKFILL_BACKOFF_MAX_SECONDS: float = 30.0
"""Ceiling on the retry delay."""


# ============================================================================
# Aggregator Defaults
# ============================================================================

DEFAULT_CONSUMER_GROUP: str = "vwap-live"
"""Consumer group name of the live aggregator."""

CHECKPOINT_INTERVAL_SECONDS: float = 60.0
"""Interval between snapshot writes per instrument."""

LOG_RETRY_SECONDS: float = 1.0
"""Delay between resubscription attempts while the log is unavailable."""

LOG_UNAVAILABLE_GRACE_SECONDS: float = 300.0
"""How long the log may stay unavailable before the outage is fatal."""


# ============================================================================
# State Management Constants
# ============================================================================

MAX_SNAPSHOT_BACKUPS: int = 10
"""Maximum number of snapshot backup files retained per instrument."""


# ============================================================================
# Output / Monitoring Defaults
# ============================================================================

PUBLISH_THROTTLE_SECONDS: float = 0.0
"""Minimum spacing between VWAP updates per instrument (0 = every update)."""

DEFAULT_ZMQ_ENDPOINT: str = "tcp://127.0.0.1:5560"
"""Bind address of the ZeroMQ VWAP publisher."""

HEARTBEAT_INTERVAL_SECONDS: float = 5.0
"""Interval between feed heartbeat probes."""

HEARTBEAT_MAX_FAILURES: int = 3
"""Consecutive heartbeat failures that count as a lost session."""


# ============================================================================
# Trading Session
# ============================================================================

DEFAULT_SESSION_TIMEZONE: str = "America/New_York"
"""Exchange timezone in which trading-session ids are computed."""

DEFAULT_SESSION_ROLL_HOUR: int = 0
"""Local hour at which a new trading session id begins."""

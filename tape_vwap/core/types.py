"""Core data types for the VWAP engine.

This module defines the fundamental records that flow through the engine
using dataclasses. All types follow strict rules:
- Decimal for all prices and notionals (never float)
- int for volumes
- datetime for all timestamps (UTC-aware)
- Validation in __post_init__ where needed
- Records that cross a component boundary are frozen
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, Iterable, Optional, Union

from .constants import (
    ARITHMETIC_CONTEXT,
    VWAP_DISPLAY_PLACES,
    CorrectionAction,
    Provenance,
)
from .exceptions import DataValidationError


def ensure_utc(timestamp: datetime) -> datetime:
    """Return ``timestamp`` as a UTC-aware datetime (naive values are taken as UTC)."""
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def _freeze_conditions(conditions: Optional[Iterable[str]]) -> FrozenSet[str]:
    if not conditions:
        return frozenset()
    if isinstance(conditions, str):
        conditions = [conditions]
    return frozenset(str(c).strip().upper() for c in conditions if str(c).strip())


def _whole_volume(value: Any, field_name: str, **context) -> int:
    """Volume as an int; fractional or non-numeric values are rejected, never truncated."""
    try:
        volume = int(value)
        if Decimal(str(value)) != volume:
            raise ValueError("fractional volume")
    except (ValueError, TypeError, InvalidOperation) as e:
        raise DataValidationError(
            f"Invalid {field_name}: {value!r}",
            field=field_name,
            error=str(e),
            **context
        )
    return volume


# ============================================================================
# Market Data Types
# ============================================================================

@dataclass(frozen=True)
class Tick:
    """
    One trade print as delivered by the feed.

    Attributes:
        instrument: Instrument id (e.g., "AAPL")
        price: Trade price
        volume: Traded quantity (>= 0)
        venue: Venue / market-center code (e.g., "LIT", "DARK")
        seq: Vendor-assigned sequence number, monotonic per instrument
        event_time: Source event time (UTC)
        conditions: Trade-condition flags
        provenance: live or historical (backfilled)
        gap_unresolved: Set when the tick was emitted past an unresolved gap
    """
    instrument: str
    price: Decimal
    volume: int
    venue: str
    seq: int
    event_time: datetime
    conditions: FrozenSet[str] = frozenset()
    provenance: Provenance = Provenance.LIVE
    gap_unresolved: bool = False

    def __post_init__(self):
        """Normalise field types and validate values."""
        if not isinstance(self.price, Decimal):
            object.__setattr__(self, 'price', Decimal(str(self.price)))
        object.__setattr__(self, 'seq', int(self.seq))
        object.__setattr__(
            self, 'volume', _whole_volume(self.volume, 'volume', instrument=self.instrument, seq=self.seq)
        )
        object.__setattr__(self, 'venue', str(self.venue).strip().upper())
        object.__setattr__(self, 'conditions', _freeze_conditions(self.conditions))
        object.__setattr__(self, 'provenance', Provenance(self.provenance))
        object.__setattr__(self, 'event_time', ensure_utc(self.event_time))

        if self.volume < 0:
            raise DataValidationError(
                f"Tick volume must be >= 0, got {self.volume}",
                instrument=self.instrument,
                seq=self.seq
            )
        if not self.price.is_finite() or self.price <= 0:
            raise DataValidationError(
                f"Tick price must be positive, got {self.price}",
                instrument=self.instrument,
                seq=self.seq
            )

    @property
    def notional(self) -> Decimal:
        """price × volume under the engine's arithmetic context."""
        return ARITHMETIC_CONTEXT.multiply(self.price, Decimal(self.volume))

    def with_provenance(self, provenance: Provenance) -> "Tick":
        return replace(self, provenance=provenance)

    def flagged(self) -> "Tick":
        """Copy of this tick marked as emitted past an unresolved gap."""
        return replace(self, gap_unresolved=True)


@dataclass(frozen=True)
class Correction:
    """
    Cancel or amend of a previously printed trade.

    A correction carries its own vendor sequence number so it is ordered
    with the ticks around it; ``ref_seq`` points at the original print.
    """
    instrument: str
    seq: int
    ref_seq: int
    action: CorrectionAction
    event_time: datetime
    new_price: Optional[Decimal] = None
    new_volume: Optional[int] = None
    provenance: Provenance = Provenance.LIVE
    gap_unresolved: bool = False

    def __post_init__(self):
        """Validate the amendment payload."""
        object.__setattr__(self, 'seq', int(self.seq))
        object.__setattr__(self, 'ref_seq', int(self.ref_seq))
        object.__setattr__(self, 'action', CorrectionAction(self.action))
        object.__setattr__(self, 'provenance', Provenance(self.provenance))
        object.__setattr__(self, 'event_time', ensure_utc(self.event_time))

        if self.action == CorrectionAction.AMEND:
            if self.new_price is None or self.new_volume is None:
                raise DataValidationError(
                    "Amend correction requires new_price and new_volume",
                    instrument=self.instrument,
                    seq=self.seq,
                    ref_seq=self.ref_seq
                )
            if not isinstance(self.new_price, Decimal):
                object.__setattr__(self, 'new_price', Decimal(str(self.new_price)))
            object.__setattr__(
                self, 'new_volume',
                _whole_volume(self.new_volume, 'new_volume', instrument=self.instrument, seq=self.seq)
            )
            if self.new_volume < 0 or self.new_price <= 0:
                raise DataValidationError(
                    "Amend correction carries invalid price/volume",
                    instrument=self.instrument,
                    seq=self.seq,
                    new_price=str(self.new_price),
                    new_volume=self.new_volume
                )

    @property
    def is_amend(self) -> bool:
        return self.action == CorrectionAction.AMEND

    def with_provenance(self, provenance: Provenance) -> "Correction":
        return replace(self, provenance=provenance)

    def flagged(self) -> "Correction":
        return replace(self, gap_unresolved=True)


MarketEvent = Union[Tick, Correction]


# ============================================================================
# Aggregation Types
# ============================================================================

@dataclass(frozen=True)
class Contribution:
    """
    Recorded effect of one accepted tick on the cumulative sums.

    Kept per original sequence number so a later correction can reverse it
    exactly, and so an amendment can be re-evaluated against the policy
    with the original venue and conditions.
    """
    price: Decimal
    volume: int
    notional: Decimal
    venue: str
    conditions: FrozenSet[str]
    event_time: datetime

    @classmethod
    def from_tick(cls, tick: Tick) -> "Contribution":
        return cls(
            price=tick.price,
            volume=tick.volume,
            notional=tick.notional,
            venue=tick.venue,
            conditions=tick.conditions,
            event_time=tick.event_time
        )


@dataclass(frozen=True)
class AggregateState:
    """
    Cumulative VWAP state of one instrument within one trading session.

    Transitions are produced by the pure functions in
    ``tape_vwap.aggregation.vwap``; the dataclass itself never mutates.
    """
    instrument: str
    session_id: Optional[str] = None
    volume: int = 0
    notional: Decimal = Decimal("0")
    log_position: Optional[int] = None
    last_seq: Optional[int] = None
    checkpoint_time: Optional[datetime] = None
    provisional: bool = False
    applied: int = 0
    filtered: int = 0

    @classmethod
    def empty(cls, instrument: str, session_id: Optional[str] = None) -> "AggregateState":
        return cls(instrument=instrument, session_id=session_id)

    @property
    def vwap(self) -> Optional[Decimal]:
        """notional / volume, or None while no volume has been accepted."""
        if self.volume <= 0:
            return None
        return ARITHMETIC_CONTEXT.divide(self.notional, Decimal(self.volume))

    def rounded_vwap(self, places: int = VWAP_DISPLAY_PLACES) -> Optional[Decimal]:
        vwap = self.vwap
        if vwap is None:
            return None
        return vwap.quantize(Decimal(1).scaleb(-places), context=ARITHMETIC_CONTEXT)

    def accounting_key(self) -> tuple:
        """Fields that define accounting equality (excludes wall-clock time)."""
        return (
            self.instrument, self.session_id, self.volume, self.notional,
            self.log_position, self.last_seq, self.provisional
        )


@dataclass(frozen=True)
class Snapshot:
    """Persisted checkpoint of an instrument's aggregate state."""
    instrument: str
    session_id: Optional[str]
    volume: int
    notional: Decimal
    log_position: Optional[int]
    last_seq: Optional[int]
    timestamp: datetime
    provisional: bool = False
    applied: int = 0
    filtered: int = 0
    contributions: Dict[int, Contribution] = field(default_factory=dict)

    @classmethod
    def capture(
        cls,
        state: AggregateState,
        contributions: Dict[int, Contribution],
        timestamp: Optional[datetime] = None
    ) -> "Snapshot":
        return cls(
            instrument=state.instrument,
            session_id=state.session_id,
            volume=state.volume,
            notional=state.notional,
            log_position=state.log_position,
            last_seq=state.last_seq,
            timestamp=ensure_utc(timestamp or datetime.now(timezone.utc)),
            provisional=state.provisional,
            applied=state.applied,
            filtered=state.filtered,
            contributions=dict(contributions)
        )

    def to_state(self) -> AggregateState:
        return AggregateState(
            instrument=self.instrument,
            session_id=self.session_id,
            volume=self.volume,
            notional=self.notional,
            log_position=self.log_position,
            last_seq=self.last_seq,
            checkpoint_time=self.timestamp,
            provisional=self.provisional,
            applied=self.applied,
            filtered=self.filtered
        )


# ============================================================================
# Boundary Types
# ============================================================================

@dataclass(frozen=True)
class AcceptResult:
    """Outcome of offering one record to the gap detector."""
    accepted: bool
    instrument: Optional[str] = None
    seq: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def accept(cls, event: MarketEvent, reason: Optional[str] = None) -> "AcceptResult":
        return cls(True, event.instrument, event.seq, reason)

    @classmethod
    def reject(
        cls,
        reason: str,
        instrument: Optional[str] = None,
        seq: Optional[int] = None
    ) -> "AcceptResult":
        return cls(False, instrument, seq, reason)

    def __bool__(self) -> bool:
        return self.accepted


@dataclass(frozen=True)
class LogRecord:
    """A record as read back from the ordered log."""
    key: str
    position: int
    provenance: Provenance
    payload: MarketEvent
    published_at: datetime

    @property
    def seq(self) -> int:
        return self.payload.seq

    @property
    def event_time(self) -> datetime:
        return self.payload.event_time


@dataclass(frozen=True)
class VwapUpdate:
    """Output record for downstream subscribers."""
    instrument: str
    vwap: Optional[Decimal]
    volume: int
    notional: Decimal
    log_position: Optional[int]
    session_id: Optional[str]
    provisional: bool
    timestamp: datetime

    @classmethod
    def from_state(cls, state: AggregateState, timestamp: Optional[datetime] = None) -> "VwapUpdate":
        return cls(
            instrument=state.instrument,
            vwap=state.vwap,
            volume=state.volume,
            notional=state.notional,
            log_position=state.log_position,
            session_id=state.session_id,
            provisional=state.provisional,
            timestamp=ensure_utc(timestamp or datetime.now(timezone.utc))
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe rendering; an undefined VWAP stays ``None``, never 0."""
        return {
            'instrument': self.instrument,
            'vwap': str(self.vwap) if self.vwap is not None else None,
            'volume': self.volume,
            'notional': str(self.notional),
            'log_position': self.log_position,
            'session_id': self.session_id,
            'provisional': self.provisional,
            'timestamp': self.timestamp.isoformat(),
        }

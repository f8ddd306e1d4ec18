"""
Envelope - JSON-safe wire form of log records.

Envelope fields:
    kind            "tick" | "correction"
    instrument      instrument id
    seq             vendor sequence number
    provenance      "live" | "historical"
    event_time      ISO-8601 UTC
    gap_unresolved  bool

Ticks add ``price`` (decimal string), ``volume`` (int), ``venue`` and
``conditions`` (sorted list). Corrections add ``ref_seq``, ``action``,
``new_price`` and ``new_volume``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from ..core.constants import CorrectionAction, Provenance, RecordKind
from ..core.exceptions import DataValidationError
from ..core.types import Correction, MarketEvent, Tick


def encode(event: MarketEvent) -> Dict[str, Any]:
    """Render a tick or correction as a JSON-safe envelope."""
    envelope: Dict[str, Any] = {
        'instrument': event.instrument,
        'seq': event.seq,
        'provenance': event.provenance.value,
        'event_time': event.event_time.isoformat(),
        'gap_unresolved': event.gap_unresolved,
    }
    if isinstance(event, Tick):
        envelope.update({
            'kind': RecordKind.TICK.value,
            'price': str(event.price),
            'volume': event.volume,
            'venue': event.venue,
            'conditions': sorted(event.conditions),
        })
    elif isinstance(event, Correction):
        envelope.update({
            'kind': RecordKind.CORRECTION.value,
            'ref_seq': event.ref_seq,
            'action': event.action.value,
            'new_price': str(event.new_price) if event.new_price is not None else None,
            'new_volume': event.new_volume,
        })
    else:
        raise DataValidationError(f"Cannot encode {type(event).__name__}")
    return envelope


def decode(envelope: Dict[str, Any]) -> MarketEvent:
    """Rebuild a tick or correction from its envelope."""
    try:
        kind = RecordKind(envelope.get('kind', RecordKind.TICK.value))
        common = {
            'instrument': envelope['instrument'],
            'seq': envelope['seq'],
            'event_time': datetime.fromisoformat(envelope['event_time']),
            'provenance': Provenance(envelope.get('provenance', Provenance.LIVE.value)),
            'gap_unresolved': bool(envelope.get('gap_unresolved', False)),
        }
        if kind == RecordKind.TICK:
            return Tick(
                price=Decimal(envelope['price']),
                volume=envelope['volume'],
                venue=envelope['venue'],
                conditions=frozenset(envelope.get('conditions') or ()),
                **common
            )
        new_price = envelope.get('new_price')
        return Correction(
            ref_seq=envelope['ref_seq'],
            action=CorrectionAction(envelope['action']),
            new_price=Decimal(new_price) if new_price is not None else None,
            new_volume=envelope.get('new_volume'),
            **common
        )
    except (KeyError, ValueError, ArithmeticError) as e:
        raise DataValidationError(
            f"Malformed log envelope: {e}",
            instrument=envelope.get('instrument'),
            seq=envelope.get('seq')
        )

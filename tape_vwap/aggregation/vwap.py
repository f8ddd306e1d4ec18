"""
VWAP transitions - pure functions over AggregateState.

    apply_tick(state, tick, policy)             → state'
    apply_correction(state, correction, policy) → state'

Both return a new state and never touch the input. The optional ledger
argument records (or reverses) per-print contributions so that a later
correction can undo exactly what the original print added.

All arithmetic runs under ARITHMETIC_CONTEXT so the result does not depend
on the caller's thread-local decimal context.
"""

from dataclasses import replace
from decimal import Decimal
from typing import Dict, Iterator, Optional, Tuple

from ..core.constants import ARITHMETIC_CONTEXT, CorrectionMode
from ..core.types import AggregateState, Contribution, Correction, Tick
from .policy import FilterPolicy


class ContributionLedger:
    """
    Recorded contributions of accepted prints, keyed by original sequence number.

    An amended print keeps its original key so any further correction that
    references the original still finds the current contribution.
    """

    def __init__(self, entries: Optional[Dict[int, Contribution]] = None):
        self._entries: Dict[int, Contribution] = dict(entries or {})

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, seq: int) -> bool:
        return seq in self._entries

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._entries))

    def get(self, seq: int) -> Optional[Contribution]:
        return self._entries.get(seq)

    def record(self, seq: int, contribution: Contribution) -> None:
        self._entries[seq] = contribution

    def remove(self, seq: int) -> Optional[Contribution]:
        return self._entries.pop(seq, None)

    def clear(self) -> None:
        self._entries.clear()

    def snapshot(self) -> Dict[int, Contribution]:
        """Copy of the entries, for checkpointing."""
        return dict(self._entries)


def accumulate(state: AggregateState, contribution: Contribution) -> AggregateState:
    """Add one contribution to the cumulative sums."""
    return replace(
        state,
        volume=state.volume + contribution.volume,
        notional=ARITHMETIC_CONTEXT.add(state.notional, contribution.notional)
    )


def reverse(state: AggregateState, contribution: Contribution) -> AggregateState:
    """Remove one contribution from the cumulative sums."""
    return replace(
        state,
        volume=state.volume - contribution.volume,
        notional=ARITHMETIC_CONTEXT.subtract(state.notional, contribution.notional)
    )


def apply_tick(
    state: AggregateState,
    tick: Tick,
    policy: FilterPolicy,
    ledger: Optional[ContributionLedger] = None,
    position: Optional[int] = None
) -> AggregateState:
    """
    Apply one print.

    A print the policy rejects leaves volume and notional unchanged; only
    the filtered counter moves.

    Args:
        state: Current state
        tick: Print to apply
        policy: Active filter policy
        ledger: Receives the contribution if the print is accepted
        position: Log position of the print, recorded as the applied position

    Returns:
        New state
    """
    progress = {
        'last_seq': tick.seq,
        'log_position': position if position is not None else state.log_position,
        'provisional': state.provisional or tick.gap_unresolved,
    }

    if policy.evaluate(tick) is not None:
        return replace(state, filtered=state.filtered + 1, **progress)

    contribution = Contribution.from_tick(tick)
    if ledger is not None:
        ledger.record(tick.seq, contribution)
    return replace(accumulate(state, contribution), applied=state.applied + 1, **progress)


def apply_correction(
    state: AggregateState,
    correction: Correction,
    policy: FilterPolicy,
    ledger: Optional[ContributionLedger] = None,
    position: Optional[int] = None
) -> AggregateState:
    """
    Apply a cancel or amend.

    The original contribution is reversed first; an amendment is then added
    if the policy's correction mode allows it and the amended print passes
    the policy (evaluated with the original venue, conditions and time).
    A correction whose original was never accepted is a no-op.

    Returns:
        New state
    """
    new_state, _ = correct(state, correction, policy, ledger)
    return replace(
        new_state,
        last_seq=correction.seq,
        log_position=position if position is not None else new_state.log_position,
        provisional=new_state.provisional or correction.gap_unresolved
    )


def correct(
    state: AggregateState,
    correction: Correction,
    policy: FilterPolicy,
    ledger: Optional[ContributionLedger] = None
) -> Tuple[AggregateState, bool]:
    """
    Core of ``apply_correction``.

    Returns:
        (new state, whether the sums changed)
    """
    if policy.correction_mode == CorrectionMode.IGNORE or ledger is None:
        return state, False

    original = ledger.get(correction.ref_seq)
    if original is None:
        return state, False

    state = reverse(state, original)
    ledger.remove(correction.ref_seq)

    if not correction.is_amend or policy.correction_mode == CorrectionMode.CANCEL_ONLY:
        return replace(state, applied=state.applied - 1), True

    if policy.evaluate_fields(
        correction.new_volume, original.venue, original.conditions, original.event_time
    ) is not None:
        return replace(state, applied=state.applied - 1, filtered=state.filtered + 1), True

    amended = Contribution(
        price=correction.new_price,
        volume=correction.new_volume,
        notional=ARITHMETIC_CONTEXT.multiply(correction.new_price, Decimal(correction.new_volume)),
        venue=original.venue,
        conditions=original.conditions,
        event_time=original.event_time
    )
    ledger.record(correction.ref_seq, amended)
    return accumulate(state, amended), True


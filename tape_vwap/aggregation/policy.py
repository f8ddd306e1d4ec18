"""
Filter Policy - Declarative predicate deciding which prints count toward VWAP.

Policy document (YAML or mapping)::

    name: lit_only
    venues:
      include: [NYSE, NASDAQ]     # or exclude: [DARK]; not both
    conditions:
      exclude: [T, Z]             # drop prints carrying any of these
      require_any: []             # when set, keep only prints carrying one
    odd_lot_threshold: 100        # drop prints with volume below this
    corrections: apply            # apply | cancel_only | ignore
    session_window:
      start: "09:30"
      end: "16:00"
      timezone: America/New_York

A policy is immutable. A running aggregator never changes policy; a
different policy means a new aggregator instance.
"""

from dataclasses import dataclass
from datetime import datetime, time
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Optional, Union
import hashlib
import json

import pytz
import yaml

from ..core.constants import DEFAULT_SESSION_TIMEZONE, CorrectionMode
from ..core.exceptions import MissingConfigError, PolicyValidationError
from ..core.types import Tick, ensure_utc


_ALLOWED_KEYS = {'name', 'venues', 'conditions', 'odd_lot_threshold', 'corrections', 'session_window'}


def _codes(values: Optional[Iterable[str]], field: str) -> FrozenSet[str]:
    if values is None:
        return frozenset()
    if isinstance(values, str):
        values = [values]
    if not isinstance(values, (list, tuple, set, frozenset)):
        raise PolicyValidationError(f"'{field}' must be a list of codes", field=field)
    return frozenset(str(v).strip().upper() for v in values if str(v).strip())


def _parse_time(value: Any, field: str) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, int):
        # YAML 1.1 reads unquoted 09:30 as sexagesimal minutes
        return time(value // 60, value % 60)
    try:
        return time.fromisoformat(str(value))
    except ValueError:
        raise PolicyValidationError(f"Invalid time for {field}: {value!r}", field=field)


@dataclass(frozen=True)
class FilterPolicy:
    """
    Immutable filter over ticks.

    Attributes:
        name: Human-readable policy name
        venues_include: Only these venues count (empty = all venues)
        venues_exclude: These venues never count
        conditions_exclude: Prints carrying any of these conditions are dropped
        conditions_require_any: When non-empty, a print must carry one of these
        odd_lot_threshold: Prints with volume below this are dropped (0 = off)
        correction_mode: How cancels/amends are treated
        session_start: Start of the counted window (exchange-local, inclusive)
        session_end: End of the counted window (exclusive)
        session_timezone: Timezone of the window
    """
    name: str = "default"
    venues_include: FrozenSet[str] = frozenset()
    venues_exclude: FrozenSet[str] = frozenset()
    conditions_exclude: FrozenSet[str] = frozenset()
    conditions_require_any: FrozenSet[str] = frozenset()
    odd_lot_threshold: int = 0
    correction_mode: CorrectionMode = CorrectionMode.APPLY
    session_start: Optional[time] = None
    session_end: Optional[time] = None
    session_timezone: str = DEFAULT_SESSION_TIMEZONE

    def __post_init__(self):
        """Validate policy."""
        for attr in ('venues_include', 'venues_exclude', 'conditions_exclude', 'conditions_require_any'):
            object.__setattr__(self, attr, _codes(getattr(self, attr), attr))

        if self.venues_include and self.venues_exclude:
            raise PolicyValidationError(
                "Policy may name venues to include or to exclude, not both",
                policy=self.name
            )
        overlap = self.conditions_exclude & self.conditions_require_any
        if overlap:
            raise PolicyValidationError(
                "Conditions both required and excluded",
                policy=self.name,
                conditions=sorted(overlap)
            )

        if isinstance(self.odd_lot_threshold, bool) or int(self.odd_lot_threshold) < 0:
            raise PolicyValidationError(
                f"odd_lot_threshold must be a non-negative integer, got {self.odd_lot_threshold}",
                policy=self.name
            )
        object.__setattr__(self, 'odd_lot_threshold', int(self.odd_lot_threshold))

        try:
            object.__setattr__(self, 'correction_mode', CorrectionMode(self.correction_mode))
        except ValueError:
            raise PolicyValidationError(
                f"Unknown correction mode: {self.correction_mode}",
                policy=self.name,
                allowed=[m.value for m in CorrectionMode]
            )

        if (self.session_start is None) != (self.session_end is None):
            raise PolicyValidationError(
                "session_window needs both start and end",
                policy=self.name
            )
        if self.session_start is not None:
            object.__setattr__(self, 'session_start', _parse_time(self.session_start, 'session_window.start'))
            object.__setattr__(self, 'session_end', _parse_time(self.session_end, 'session_window.end'))
            if self.session_start == self.session_end:
                raise PolicyValidationError("session_window start equals end", policy=self.name)
        try:
            pytz.timezone(self.session_timezone)
        except pytz.UnknownTimeZoneError:
            raise PolicyValidationError(
                f"Unknown timezone: {self.session_timezone}",
                policy=self.name
            )

    # ========================================================================
    # Evaluation
    # ========================================================================

    def evaluate(self, tick: Tick) -> Optional[str]:
        """
        Decide whether ``tick`` counts.

        Returns:
            None if accepted, else a short rejection reason
        """
        return self.evaluate_fields(tick.volume, tick.venue, tick.conditions, tick.event_time)

    def evaluate_fields(
        self,
        volume: int,
        venue: str,
        conditions: FrozenSet[str],
        event_time: datetime
    ) -> Optional[str]:
        """Evaluate the policy against the fields of a print (used for amendments)."""
        if self.venues_include and venue not in self.venues_include:
            return "venue_not_included"
        if venue in self.venues_exclude:
            return "venue_excluded"
        if conditions & self.conditions_exclude:
            return "condition_excluded"
        if self.conditions_require_any and not (conditions & self.conditions_require_any):
            return "condition_missing"
        if self.odd_lot_threshold and volume < self.odd_lot_threshold:
            return "odd_lot"
        if self.session_start is not None and not self.in_session_window(event_time):
            return "outside_session_window"
        return None

    def accepts(self, tick: Tick) -> bool:
        return self.evaluate(tick) is None

    def in_session_window(self, event_time: datetime) -> bool:
        local = ensure_utc(event_time).astimezone(pytz.timezone(self.session_timezone)).time()
        if self.session_start < self.session_end:
            return self.session_start <= local < self.session_end
        # Window wraps midnight
        return local >= self.session_start or local < self.session_end

    # ========================================================================
    # Identity / Serialization
    # ========================================================================

    def to_dict(self) -> Dict[str, Any]:
        venues: Dict[str, Any] = {}
        if self.venues_include:
            venues['include'] = sorted(self.venues_include)
        if self.venues_exclude:
            venues['exclude'] = sorted(self.venues_exclude)
        data: Dict[str, Any] = {
            'name': self.name,
            'venues': venues,
            'conditions': {
                'exclude': sorted(self.conditions_exclude),
                'require_any': sorted(self.conditions_require_any),
            },
            'odd_lot_threshold': self.odd_lot_threshold,
            'corrections': self.correction_mode.value,
        }
        if self.session_start is not None:
            data['session_window'] = {
                'start': self.session_start.strftime('%H:%M:%S'),
                'end': self.session_end.strftime('%H:%M:%S'),
                'timezone': self.session_timezone,
            }
        return data

    @property
    def policy_id(self) -> str:
        """Stable fingerprint of the policy rules (the name is not part of it)."""
        rules = self.to_dict()
        rules.pop('name')
        digest = hashlib.sha256(json.dumps(rules, sort_keys=True).encode('utf-8'))
        return digest.hexdigest()[:12]

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FilterPolicy":
        """
        Build a policy from its document form.

        Raises:
            PolicyValidationError on unknown keys or invalid values
        """
        data = data or {}
        if not isinstance(data, dict):
            raise PolicyValidationError("Policy document must be a mapping")
        unknown = set(data) - _ALLOWED_KEYS
        if unknown:
            raise PolicyValidationError("Unknown policy keys", keys=sorted(unknown))

        venues = data.get('venues') or {}
        conditions = data.get('conditions') or {}
        window = data.get('session_window') or {}
        if not all(isinstance(section, dict) for section in (venues, conditions, window)):
            raise PolicyValidationError("venues, conditions and session_window must be mappings")

        return cls(
            name=str(data.get('name', 'default')),
            venues_include=_codes(venues.get('include'), 'venues.include'),
            venues_exclude=_codes(venues.get('exclude'), 'venues.exclude'),
            conditions_exclude=_codes(conditions.get('exclude'), 'conditions.exclude'),
            conditions_require_any=_codes(conditions.get('require_any'), 'conditions.require_any'),
            odd_lot_threshold=data.get('odd_lot_threshold', 0),
            correction_mode=data.get('corrections', CorrectionMode.APPLY.value),
            session_start=window.get('start'),
            session_end=window.get('end'),
            session_timezone=window.get('timezone', DEFAULT_SESSION_TIMEZONE)
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "FilterPolicy":
        """Load a policy document from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise MissingConfigError("Policy file not found", path=str(path))
        with open(path, 'r') as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise PolicyValidationError(f"Policy is not valid YAML: {e}", path=str(path))
        return cls.from_dict(data)

    def __str__(self) -> str:
        return f"FilterPolicy({self.name}, id={self.policy_id})"

"""
Session Calendar - Maps event times to trading-session ids.
"""

from datetime import date, datetime, time, timedelta

import pytz

from ..core.constants import DEFAULT_SESSION_ROLL_HOUR, DEFAULT_SESSION_TIMEZONE
from ..core.exceptions import InvalidConfigError
from ..core.types import ensure_utc


class SessionCalendar:
    """
    Tags timestamps with the trading session they belong to.

    A session id is the exchange-local calendar date (``YYYY-MM-DD``) of the
    session. Sessions roll at ``roll_hour`` local time, so with a roll hour of
    18 a print at 19:00 New York time on Monday belongs to Tuesday's session.
    """

    def __init__(
        self,
        timezone: str = DEFAULT_SESSION_TIMEZONE,
        roll_hour: int = DEFAULT_SESSION_ROLL_HOUR
    ):
        try:
            self.tz = pytz.timezone(timezone)
        except pytz.UnknownTimeZoneError:
            raise InvalidConfigError(f"Unknown session timezone: {timezone}", timezone=timezone)
        if not 0 <= int(roll_hour) <= 23:
            raise InvalidConfigError(f"roll_hour must be within 0..23, got {roll_hour}")
        self.roll_hour = int(roll_hour)

    @classmethod
    def from_config(cls, config: dict) -> "SessionCalendar":
        session = config.get('session', {}) or {}
        return cls(
            timezone=session.get('timezone', DEFAULT_SESSION_TIMEZONE),
            roll_hour=session.get('roll_hour', DEFAULT_SESSION_ROLL_HOUR)
        )

    def session_date(self, timestamp: datetime) -> date:
        local = ensure_utc(timestamp).astimezone(self.tz)
        if self.roll_hour and local.hour >= self.roll_hour:
            return local.date() + timedelta(days=1)
        return local.date()

    def session_id(self, timestamp: datetime) -> str:
        """Session id for an event time."""
        return self.session_date(timestamp).isoformat()

    def session_start(self, session_id: str) -> datetime:
        """UTC instant at which ``session_id`` opens."""
        day = date.fromisoformat(session_id)
        if self.roll_hour:
            opens = datetime.combine(day - timedelta(days=1), time(self.roll_hour))
        else:
            opens = datetime.combine(day, time(0))
        return self.tz.localize(opens).astimezone(pytz.utc)

    def is_same_session(self, a: datetime, b: datetime) -> bool:
        return self.session_id(a) == self.session_id(b)

"""Trading-session calendar."""

from .session_calendar import SessionCalendar

__all__ = ["SessionCalendar"]

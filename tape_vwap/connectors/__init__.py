"""
Feed and output boundaries.

Main Components:
    FeedBoundary / FeedSession: upstream feed contract and its adapter onto the gap detector
    CsvTickFeed: file-backed feed replaying a recorded tape
    FeedHeartbeatMonitor: turns heartbeat failures into session drop/restore
    FeedMessageValidator: raw feed message validation
    InMemoryVwapPublisher / ZmqVwapPublisher: VWAP output
"""

from .csv_feed import CsvTickFeed
from .feed import FeedBoundary, FeedSession, SessionEvent
from .heartbeat import FeedHeartbeatMonitor
from .message_validator import FeedMessageValidator
from .publisher import InMemoryVwapPublisher, VwapPublisher, ZmqVwapPublisher, build_publisher

__all__ = [
    "CsvTickFeed",
    "FeedBoundary",
    "FeedHeartbeatMonitor",
    "FeedMessageValidator",
    "FeedSession",
    "InMemoryVwapPublisher",
    "SessionEvent",
    "VwapPublisher",
    "ZmqVwapPublisher",
    "build_publisher",
]

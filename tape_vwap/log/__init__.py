"""Ordered log contract, in-memory reference log and envelope codec."""

from .envelope import decode, encode
from .ordered_log import InMemoryOrderedLog, LogSubscription, OrderedLog

__all__ = [
    "OrderedLog",
    "InMemoryOrderedLog",
    "LogSubscription",
    "encode",
    "decode",
]

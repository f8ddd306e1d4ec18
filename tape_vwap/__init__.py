"""Policy-filtered, gap-free VWAP engine."""

__version__ = "0.1.0"

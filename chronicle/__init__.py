"""Chronicle: timestamped personal logging with multi-device sync."""

__version__ = "0.1.0"

"""Change-log garbage collection for a multi-client sync layer."""

__version__ = "0.1.0"

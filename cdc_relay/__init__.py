"""Change-data-capture relay: ordered source log to idempotent analytical sink."""

__version__ = "0.1.0"

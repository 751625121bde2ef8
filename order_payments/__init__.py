"""Order payment reconciliation core."""

__version__ = "1.0.0"

"""Aggregation engine turning financial operations into taxable events."""

__version__ = "0.1.0"

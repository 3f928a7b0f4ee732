"""AumOS usage metering and billing reconciliation service."""

__version__ = "0.1.0"

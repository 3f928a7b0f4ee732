"""HTTP layer for the AumOS usage metering service."""

"""Usage accounting, turn persistence and session review."""

from sanctuary.telemetry.pricing import RATE_TABLE, UsageRecord, estimate_cost

__all__ = ["RATE_TABLE", "UsageRecord", "estimate_cost"]

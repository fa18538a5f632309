"""Turn engine: aggregation, dispatch, gating and the conversation loop."""

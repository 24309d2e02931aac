"""HTTP layer for the tracking gate."""

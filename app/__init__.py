"""HTTP surface for triggering bot jobs."""

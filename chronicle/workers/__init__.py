"""Long-running worker processes (watchdog loop, single-job runner)."""

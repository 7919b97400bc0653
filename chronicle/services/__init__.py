"""Business logic services for the job engine."""

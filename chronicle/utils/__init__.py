"""Cross-cutting utilities for the job engine.

Modules:
    logging: JSON structured logger with context binding.
    alerts: Discord webhook alerts for permanent failures.
    filesystem: Workspace path helpers for generated cover images.
"""

"""Real-time tracking of project lifecycle operations."""

__all__ = [
    "api",
    "cli",
    "console",
    "events",
    "log_buffer",
    "models",
    "refresh",
    "registry",
    "router",
    "scheduler",
    "tracker",
    "transport",
]

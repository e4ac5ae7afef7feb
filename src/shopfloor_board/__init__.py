"""Shop-floor status board: realtime machine status sync and push notifications."""

__version__ = "0.3.0"

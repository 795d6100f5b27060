"""Bridge Home Assistant 3D-printer entities to notifications, live sessions and metrics."""

__version__ = "1.0.0"

"""Groups management engine for the pickup admin dashboard."""

__version__ = "0.1.0"

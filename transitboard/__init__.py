"""Real-time subway and bus arrivals for a fixed set of NYC stops."""

__version__ = "0.3.0"

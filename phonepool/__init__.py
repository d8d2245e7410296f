"""phonepool — check out, mirror and hand off shared test phones."""

__version__ = "0.1.0"

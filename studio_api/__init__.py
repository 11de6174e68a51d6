"""Studio scheduling and registration engine."""

__version__ = "1.0.0"

"""Session recording and focus-following export engine."""

__version__ = "0.1.0"

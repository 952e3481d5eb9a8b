"""castlink - cast a screen to a receiver found by access code."""

__version__ = "0.1.0"

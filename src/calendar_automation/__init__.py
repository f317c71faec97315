"""Calendar automation: rule engine for calendar event lifecycle and time triggers."""

__version__ = "0.1.0"

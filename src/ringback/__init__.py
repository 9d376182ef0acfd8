"""Ringback: incoming-call style alerts for upcoming Google Calendar meetings."""

__version__ = "0.1.0"

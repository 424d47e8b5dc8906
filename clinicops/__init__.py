"""Notification lifecycle and reminder scheduling for the clinic backend."""

__version__ = "0.1.0"

"""Periodic availability monitoring for HTTP(S) endpoints."""

__version__ = "0.4.0"

"""Resumable chunked synchronization of CRM partner listings."""

__version__ = "1.0.0"

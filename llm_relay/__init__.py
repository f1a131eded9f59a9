"""Asynchronous relay between spreadsheet-style callers and the Messages API."""

__version__ = "1.0.0"

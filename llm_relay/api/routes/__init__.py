"""API routes package."""

from . import health, reconcile, requests

__all__ = ["health", "reconcile", "requests"]

"""Caching, pagination, and cancellation primitives used by the service layer."""

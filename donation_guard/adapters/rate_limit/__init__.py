"""Rate limiting adapters.

This package provides a small abstraction layer so the limiter can start with
an in-memory sliding-window counter and later migrate to Redis or another
shared store without changing the API layer.
"""

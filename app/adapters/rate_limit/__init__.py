"""Rate limiting adapters.

This package provides a small abstraction layer so the API can run with an
in-memory fixed-window limiter or a Redis sliding-window limiter without
changing the HTTP layer.
"""

"""Caching, rate-limited proxy for SREF ensemble plume data."""

__version__ = "0.1.0"

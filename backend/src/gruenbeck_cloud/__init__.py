"""
Top-level package for the `gruenbeck_cloud` Python code.

This package provides Grünbeck cloud authentication, the device directory and
the realtime telemetry session of Grünbeck water softeners.
"""

__all__: list[str] = []

"""Pricing sync package initialization.

Having this file ensures the 'pricing_sync' directory is recognized as a standard
Python package during test discovery and when installed in editable mode.
It also provides a single place to expose high-level exports if needed.
"""

__all__: list[str] = []

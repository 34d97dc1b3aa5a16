"""
Unified configuration entrypoint.

Prefer importing `get_settings` from `config.settings` (or `cookhound.config`).
"""

from .settings import get_settings  # noqa: F401

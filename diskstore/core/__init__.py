"""Core: settings loading.

Single place for process-level configuration.
"""

from diskstore.core.config import Settings, get_settings

__all__ = ["Settings", "get_settings"]

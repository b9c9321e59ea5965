"""memdex - hybrid keyword + semantic search over markdown memory notes."""

from __future__ import annotations

__version__ = "0.1.0"

from memdex.config import AppConfig, ConfigurationError, MemoryConfig
from memdex.manager import MemoryManager
from memdex.models import SearchResult

__all__ = [
    "AppConfig",
    "ConfigurationError",
    "MemoryConfig",
    "MemoryManager",
    "SearchResult",
    "__version__",
]

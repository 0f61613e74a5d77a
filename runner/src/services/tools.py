"""
Resolve tool aliases (e.g. "jdk17", "node16") to installation paths.
"""

import logging
import os
import shutil
import threading
from typing import Dict, Optional

from runner.src.config import get_settings
from runner.src.errors import ToolResolutionError

logger = logging.getLogger(__name__)

class ToolResolver:
    """
    Shared across runs. Lookups are cached behind a lock so concurrent
    runs can resolve the same alias safely.
    """

    def __init__(self, installations: Optional[Dict[str, str]] = None):
        self.installations = dict(
            get_settings().tool_installations if installations is None else installations
        )
        self._cache: Dict[str, str] = {}
        self._lock = threading.Lock()

    def resolve(self, alias: str) -> str:
        with self._lock:
            if alias in self._cache:
                return self._cache[alias]

        path = self._lookup(alias)

        with self._lock:
            self._cache.setdefault(alias, path)
            return self._cache[alias]

    def _lookup(self, alias: str) -> str:
        if alias in self.installations:
            path = self.installations[alias]
            if not os.path.exists(path):
                raise ToolResolutionError(alias, reason=f"tool installation missing at {path}")
            logger.info(f"Resolved tool {alias} -> {path}")
            return path

        found = shutil.which(alias)
        if found:
            logger.info(f"Resolved tool {alias} -> {found} (PATH)")
            return found

        raise ToolResolutionError(alias)


def tool_bin_dir(path: str) -> str:
    """Directory to put on PATH for a resolved tool."""
    if os.path.isfile(path):
        return os.path.dirname(path)
    bin_dir = os.path.join(path, "bin")
    return bin_dir if os.path.isdir(bin_dir) else path

"""
In-memory cache of loaded model backends.

Entries are keyed by model id and remember the weights revision they were
loaded from, so a stale entry is never served after a retrain swaps weights.
A model id can hold one loaded instance per backend name.
"""

import threading
from typing import Any, Dict, Optional, Tuple

from loguru import logger


class ModelCache:
    """Thread-safe cache of loaded backend instances keyed by model id."""
    
    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[int, Tuple[int, Dict[str, Any]]] = {}
    
    def get(self, model_id: int, revision: int, backend_name: str) -> Optional[Any]:
        """Return the cached backend for this model, weights revision and backend name."""
        with self._lock:
            entry = self._entries.get(model_id)
            if entry is None:
                return None
            cached_revision, backends = entry
            if cached_revision != revision:
                logger.debug(
                    f"Model cache stale for model {model_id}: "
                    f"cached revision {cached_revision}, current {revision}"
                )
                del self._entries[model_id]
                return None
            return backends.get(backend_name)
    
    def set(self, model_id: int, revision: int, backend_name: str, backend: Any) -> None:
        """Cache a loaded backend for a model's weights revision."""
        with self._lock:
            entry = self._entries.get(model_id)
            if entry is None or entry[0] != revision:
                entry = (revision, {})
                self._entries[model_id] = entry
            entry[1][backend_name] = backend
        logger.debug(f"Model cache set: model {model_id} rev {revision} ({backend_name})")
    
    def discard(self, model_id: int, backend_name: str) -> None:
        """Drop one backend instance for a model, e.g. after it failed."""
        with self._lock:
            entry = self._entries.get(model_id)
            if entry is not None:
                entry[1].pop(backend_name, None)
    
    def invalidate(self, model_id: int) -> None:
        """Drop every cached backend for a model."""
        with self._lock:
            removed = self._entries.pop(model_id, None)
        if removed is not None:
            logger.debug(f"Model cache invalidated: model {model_id}")
    
    def clear(self) -> None:
        """Clear all cache entries."""
        with self._lock:
            self._entries.clear()
        logger.debug("Model cache cleared")
    
    def __contains__(self, model_id: int) -> bool:
        with self._lock:
            return model_id in self._entries

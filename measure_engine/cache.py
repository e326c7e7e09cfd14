"""
Time-bounded read-through cache for calculated measure definitions.

Owned by an engine instance rather than living at module level, so
independent engines (and tests) never share state. Not synchronized:
concurrent repopulation is last-writer-wins, staleness is bounded by the TTL.
"""

import logging
import time
from typing import Callable, List, Optional

from .config import DEFAULT_CACHE_TTL_SECONDS
from .models import MeasureDefinition

logger = logging.getLogger(__name__)


class DefinitionCache:
    def __init__(
        self,
        loader: Callable[[], List[MeasureDefinition]],
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._definitions: Optional[List[MeasureDefinition]] = None
        self._loaded_at: Optional[float] = None

    @property
    def is_fresh(self) -> bool:
        if self._definitions is None or self._loaded_at is None:
            return False
        return self._clock() - self._loaded_at < self._ttl

    def get(self) -> List[MeasureDefinition]:
        """Cached definitions, reloading through the loader once the TTL expires."""
        if self.is_fresh:
            return self._definitions
        definitions = list(self._loader())
        self._definitions = definitions
        self._loaded_at = self._clock()
        logger.debug(f"Loaded {len(definitions)} calculated measure definitions")
        return definitions

    def invalidate(self) -> None:
        self._definitions = None
        self._loaded_at = None

"""
Property type id resolution for a single drain run.
"""
import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from chronicle_uplink.models import REQUIRED_PROPERTY_TYPES, PropertyTypeMap

logger = structlog.get_logger(__name__)


def missing_keys(property_type_ids: PropertyTypeMap) -> list[str]:
    """Required FQNs that are absent (or empty) in the mapping."""
    return [fqn.value for fqn in REQUIRED_PROPERTY_TYPES if not property_type_ids.get(fqn.value)]


class PropertyTypeResolver:
    """
    Fetches the property type mapping at most once and caches it.

    One resolver is created per drain run, so nothing is cached across runs.
    Concurrent callers share the single in-flight lookup.
    """

    def __init__(self, fetch: Callable[[], Awaitable[PropertyTypeMap]]):
        self._fetch = fetch
        self._result: Optional[PropertyTypeMap] = None
        self._lock = asyncio.Lock()

    async def resolve(self) -> PropertyTypeMap:
        async with self._lock:
            if self._result is None:
                try:
                    result = await self._fetch()
                except Exception as e:
                    logger.error("Property type lookup raised", error=str(e))
                    result = {}
                self._result = dict(result or {})
                absent = missing_keys(self._result)
                if absent:
                    logger.warning("Property type ids incomplete", missing=absent)
            return dict(self._result)

"""In-memory caches - could swap to Redis later if needed"""
from typing import Optional, Any
from cachetools import LRUCache
from split_service.config import settings


# Stats for completed experiments never change, so no TTL.
# key: "stats:{experiment_id}"
completed_stats_cache = LRUCache(maxsize=settings.cache_max_size)


def get_completed_stats(experiment_id: int) -> Optional[Any]:
    """Get cached stats for a completed experiment if present"""
    key = f"stats:{experiment_id}"
    return completed_stats_cache.get(key)


def set_completed_stats(experiment_id: int, value: Any):
    """Cache stats for a completed experiment"""
    key = f"stats:{experiment_id}"
    completed_stats_cache[key] = value


def invalidate_stats(experiment_id: int):
    """Drop cached stats (e.g. experiment deleted)"""
    key = f"stats:{experiment_id}"
    completed_stats_cache.pop(key, None)

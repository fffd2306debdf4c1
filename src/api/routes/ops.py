"""
Operations endpoints: cache inspection and invalidation, rate-limit table.

Mounted under the /ops prefix.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Query

from src.api.rate_limit import throttle
from src.core.rate_limits import describe_policies
from src.storage import get_key_value_store

logger = structlog.get_logger()
router = APIRouter()


@router.get("/cache/stats")
@throttle("API", "READ")
async def cache_stats() -> dict[str, Any]:
    """Backend in use and its size."""
    store = await get_key_value_store()
    return await store.get_stats()


@router.delete("/cache")
@throttle("API", "DELETE")
async def clear_cache(
    pattern: str = Query(..., min_length=1, description="Key glob; * and ? are wildcards"),
):
    """Delete cached keys matching a glob."""
    store = await get_key_value_store()
    deleted = await store.delete_pattern(pattern)
    logger.info("cache_cleared", pattern=pattern, deleted=deleted)
    return {"deleted": deleted, "pattern": pattern}


@router.get("/rate-limits")
@throttle("API", "READ")
async def rate_limits():
    """Per-category windows and ceilings, presets, and tier multipliers."""
    return describe_policies()

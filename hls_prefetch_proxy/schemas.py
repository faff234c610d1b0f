from typing import Any, Dict, List

from pydantic import BaseModel, Field


class SegmentCacheStatus(BaseModel):
    size: int = Field(..., description="Number of segments currently held (pending or ready).")
    capacity: int = Field(..., description="Maximum number of segments kept by the cache.")
    keys: List[str] = Field(default_factory=list, description="Cache keys, oldest first.")
    stats: Dict[str, Any] = Field(default_factory=dict, description="Cache performance counters.")

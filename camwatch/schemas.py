# camwatch/schemas.py
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

# pydantic v2: enable ORM mode
class ORMBase(BaseModel):
    model_config = dict(from_attributes=True)


# ---- Streams ----
class StartStreamIn(BaseModel):
    cameraId: Optional[str] = None
    rtspUrl: Optional[str] = Field(default=None, max_length=1000)
    quality: Optional[str] = None
    streamId: Optional[str] = Field(default=None, max_length=128)


class PresetOut(BaseModel):
    name: str
    resolution: str
    videoBitrate: str
    audioBitrate: str


# ---- History ----
class StreamRecordOut(ORMBase):
    id: str
    camera_id: Optional[str] = None
    quality: str
    status: str
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    error_count: int = 0
    extra_json: Optional[Dict[str, Any]] = None

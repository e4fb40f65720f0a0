# camwatch/models.py
from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import String, Integer, ForeignKey, Enum, DateTime, JSON, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


def new_id() -> str:
    return str(uuid.uuid4())


class CameraStatus(str, enum.Enum):
    online = "online"
    offline = "offline"
    streaming = "streaming"
    error = "error"


# ---- Cameras ----
class Camera(Base):
    __tablename__ = "cameras"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(200))
    rtsp_url: Mapped[Optional[str]] = mapped_column(String(1000))
    vendor_device_id: Mapped[Optional[str]] = mapped_column(String(120), index=True)
    default_quality: Mapped[Optional[str]] = mapped_column(String(20))
    status: Mapped[CameraStatus] = mapped_column(Enum(CameraStatus), default=CameraStatus.offline, nullable=False)

    last_seen: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    streams: Mapped[List["StreamRecord"]] = relationship(back_populates="camera", cascade="all, delete-orphan")


# ---- Stream history ----
class StreamRecord(Base):
    """One row per successful start; the live state lives in the registry."""

    __tablename__ = "stream_records"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)
    camera_id: Mapped[Optional[str]] = mapped_column(ForeignKey("cameras.id", ondelete="CASCADE"), index=True)
    rtsp_url: Mapped[str] = mapped_column(String(1000))
    quality: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20), default="running")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    stopped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    extra_json: Mapped[Optional[dict]] = mapped_column(JSON, default=None)

    camera: Mapped[Optional[Camera]] = relationship(back_populates="streams")

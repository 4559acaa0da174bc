from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


BookStatus = Literal["processing", "pending", "ready", "error"]

SegmentStatus = Literal["pending", "generating", "completed", "error", "skipped"]


# 前端沿用 camelCase 字段名（bookId / audioUrl ...）
class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class AudioSegmentOut(CamelModel):
    id: str
    book_id: str
    segment_index: int = 0
    content: str
    audio_url: Optional[str] = None
    status: SegmentStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BookOut(CamelModel):
    id: str
    title: str
    author: Optional[str] = None
    cover_url: Optional[str] = None
    file_url: Optional[str] = None
    page_count: int = 0
    current_page: int = 0
    language: Optional[str] = None
    status: BookStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    categories: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class UploadRequest(CamelModel):
    file_url: str
    title: str


class UploadResponse(CamelModel):
    id: str
    status: BookStatus


class ProcessResponse(CamelModel):
    book_id: str
    status: str = "processing"
    message: str = "Audio generation started"


class BookStatusResponse(CamelModel):
    id: str
    status: BookStatus
    segments: Dict[str, int] = Field(default_factory=dict)


class BookUpdate(CamelModel):
    title: Optional[str] = None
    cover_url: Optional[str] = None
    current_page: Optional[int] = Field(default=None, ge=0)
    categories: Optional[List[str]] = None
    tags: Optional[List[str]] = None


class UpdateURLRequest(CamelModel):
    cloud_url: str


class GenerateSegmentRequest(CamelModel):
    book_id: str
    content: str


class CoverUploadResponse(CamelModel):
    cover_url: str


class CategoryOut(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None


class TagOut(CamelModel):
    id: str
    name: str
    created_at: Optional[datetime] = None


# WebSocket 推送事件：段落音频就绪
class AudioReadyEvent(CamelModel):
    type: Literal["audio_ready"] = "audio_ready"
    segment: AudioSegmentOut

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base

if TYPE_CHECKING:
    from app.models.book import Book


SEGMENT_PENDING = "pending"
SEGMENT_GENERATING = "generating"
SEGMENT_COMPLETED = "completed"
SEGMENT_ERROR = "error"
SEGMENT_SKIPPED = "skipped"

# 终态：除非重新提交，否则不再流转
TERMINAL_SEGMENT_STATUSES = (SEGMENT_COMPLETED, SEGMENT_ERROR, SEGMENT_SKIPPED)
ACTIVE_SEGMENT_STATUSES = (SEGMENT_PENDING, SEGMENT_GENERATING)


class AudioSegment(Base):
    __tablename__ = "audio_segments"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    book_id: Mapped[str] = mapped_column(
        String, ForeignKey("books.id", ondelete="CASCADE"), index=True, nullable=False
    )
    segment_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    audio_url: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, index=True, default=SEGMENT_PENDING)
    # 每次状态或音频地址变化时递增（乐观并发校验）
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    book: Mapped["Book"] = relationship(back_populates="segments")

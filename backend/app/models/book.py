from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.models.catalog import book_categories, book_tags

if TYPE_CHECKING:
    from app.models.audio_segment import AudioSegment
    from app.models.catalog import Category, Tag


# 书籍状态：processing / pending / ready / error
BOOK_STATUSES = ("processing", "pending", "ready", "error")


class Book(Base):
    __tablename__ = "books"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str] = mapped_column(String, index=True, nullable=False)
    author: Mapped[str] = mapped_column(String, default="Unknown")
    cover_url: Mapped[str | None] = mapped_column(String, nullable=True)
    # 源文件：远端 URL 或本地路径
    file_url: Mapped[str | None] = mapped_column(String, nullable=True)
    page_count: Mapped[int] = mapped_column(Integer, default=0)
    current_page: Mapped[int] = mapped_column(Integer, default=0)
    language: Mapped[str] = mapped_column(String, default="en")
    status: Mapped[str] = mapped_column(String, index=True, default="processing")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    segments: Mapped[list["AudioSegment"]] = relationship(
        back_populates="book",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="AudioSegment.segment_index",
    )
    categories: Mapped[list["Category"]] = relationship(secondary=book_categories)
    tags: Mapped[list["Tag"]] = relationship(secondary=book_tags)

    @property
    def category_names(self) -> list[str]:
        return [item.name for item in self.categories]

    @property
    def tag_names(self) -> list[str]:
        return [item.name for item in self.tags]

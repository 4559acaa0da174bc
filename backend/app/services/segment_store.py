from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import SegmentStoreError
from app.models import AudioSegment, Book
from app.models.audio_segment import (
    ACTIVE_SEGMENT_STATUSES,
    SEGMENT_PENDING,
    TERMINAL_SEGMENT_STATUSES,
)

logger = logging.getLogger(__name__)

_UNSET: Any = object()


def _commit(db: Session, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise SegmentStoreError(f"{action} failed: {exc}") from exc


# ---- 书籍 ----

def get_book(db: Session, book_id: str) -> Book | None:
    return db.get(Book, book_id)


def save_book(db: Session, book: Book) -> Book:
    db.add(book)
    _commit(db, f"save book {book.id}")
    return book


# 更新书籍字段并刷新 updated_at
def update_book(db: Session, book: Book, **fields: Any) -> Book:
    for key, value in fields.items():
        setattr(book, key, value)
    book.updated_at = datetime.utcnow()
    _commit(db, f"update book {book.id}")
    return book


# ---- 段落 ----

def get_audio_segment(db: Session, segment_id: str) -> AudioSegment | None:
    return db.get(AudioSegment, segment_id)


# 按文档顺序读取段落，可按状态过滤
def get_audio_segments(
    db: Session, book_id: str, statuses: Iterable[str] | None = None
) -> List[AudioSegment]:
    query = db.query(AudioSegment).filter(AudioSegment.book_id == book_id)
    if statuses is not None:
        query = query.filter(AudioSegment.status.in_(list(statuses)))
    return query.order_by(AudioSegment.segment_index, AudioSegment.created_at).all()


def count_segments(db: Session, book_id: str) -> int:
    return db.query(AudioSegment).filter(AudioSegment.book_id == book_id).count()


def count_segments_by_status(db: Session, book_id: str) -> Dict[str, int]:
    rows = (
        db.query(AudioSegment.status, func.count(AudioSegment.id))
        .filter(AudioSegment.book_id == book_id)
        .group_by(AudioSegment.status)
        .all()
    )
    return {str(status): int(count or 0) for status, count in rows}


def next_segment_index(db: Session, book_id: str) -> int:
    current = (
        db.query(func.max(AudioSegment.segment_index))
        .filter(AudioSegment.book_id == book_id)
        .scalar()
    )
    return 0 if current is None else int(current) + 1


def save_audio_segment(db: Session, segment: AudioSegment) -> AudioSegment:
    db.add(segment)
    _commit(db, f"save segment {segment.id}")
    return segment


def transition_segment(
    db: Session,
    segment_id: str,
    expected: str | Iterable[str],
    status: str,
    audio_url: str | None = _UNSET,
) -> bool:
    """Move a segment to ``status`` only if it is currently in ``expected``.

    The update is a single conditional statement, so two workers racing on
    the same row cannot both win. Returns whether this caller won.
    """
    expected_statuses = [expected] if isinstance(expected, str) else list(expected)
    values: Dict[str, Any] = {
        "status": status,
        "version": AudioSegment.version + 1,
        "updated_at": datetime.utcnow(),
    }
    if audio_url is not _UNSET:
        values["audio_url"] = audio_url
    stmt = (
        update(AudioSegment)
        .where(AudioSegment.id == segment_id, AudioSegment.status.in_(expected_statuses))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
    except SQLAlchemyError as exc:
        db.rollback()
        raise SegmentStoreError(f"transition segment {segment_id} failed: {exc}") from exc
    _commit(db, f"transition segment {segment_id}")
    return (result.rowcount or 0) == 1


# 远端迁移完成后替换音频地址（仅当仍指向本地文件时）
def swap_audio_url(db: Session, segment_id: str, expected_url: str, new_url: str) -> bool:
    stmt = (
        update(AudioSegment)
        .where(AudioSegment.id == segment_id, AudioSegment.audio_url == expected_url)
        .values(
            audio_url=new_url,
            version=AudioSegment.version + 1,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
    except SQLAlchemyError as exc:
        db.rollback()
        raise SegmentStoreError(f"swap audio url for {segment_id} failed: {exc}") from exc
    _commit(db, f"swap audio url for {segment_id}")
    return (result.rowcount or 0) == 1


# 重新提交：终态段落回到 pending，清空旧音频地址
def reset_segment(db: Session, segment_id: str) -> bool:
    return transition_segment(
        db, segment_id, TERMINAL_SEGMENT_STATUSES, SEGMENT_PENDING, audio_url=None
    )


def has_active_segments(db: Session, book_id: str) -> bool:
    return (
        db.query(AudioSegment)
        .filter(
            AudioSegment.book_id == book_id,
            AudioSegment.status.in_(ACTIVE_SEGMENT_STATUSES),
        )
        .count()
        > 0
    )


def refresh_book_status(db: Session, book_id: str) -> str | None:
    """Flip a ``processing`` book to ``ready`` once no segment is still active.

    Individual segment errors do not affect the book status; they stay
    queryable on the segment rows.
    """
    book = db.get(Book, book_id)
    if not book:
        return None
    if book.status != "processing":
        return book.status
    if has_active_segments(db, book_id):
        return book.status
    update_book(db, book, status="ready")
    logger.info("Book %s is ready", book_id)
    return book.status

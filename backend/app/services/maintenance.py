from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List

from sqlalchemy.orm import Session

from app.models import AudioSegment, Book
from app.models.audio_segment import SEGMENT_GENERATING, SEGMENT_PENDING

logger = logging.getLogger(__name__)


# 按标题去重：保留最新创建的一本，其余连同段落一并删除
def cleanup_duplicate_books(db: Session) -> List[str]:
    books = db.query(Book).order_by(Book.title, Book.created_at.desc()).all()
    seen: set[str] = set()
    removed: List[str] = []
    for book in books:
        if book.title in seen:
            removed.append(book.id)
            db.delete(book)
            continue
        seen.add(book.title)
    if removed:
        db.commit()
        logger.info("Removed %d duplicate books", len(removed))
    return removed


# 进程重启后，generating 状态的段落已无人处理，回退为 pending；
# 书籍保持 processing，需调用 generate-audio 重新派发
def requeue_orphaned_segments(db: Session) -> Dict[str, int]:
    rows = db.query(AudioSegment).filter(AudioSegment.status == SEGMENT_GENERATING).all()
    per_book: Dict[str, int] = {}
    now = datetime.utcnow()
    for segment in rows:
        segment.status = SEGMENT_PENDING
        segment.updated_at = now
        segment.version = (segment.version or 0) + 1
        per_book[segment.book_id] = per_book.get(segment.book_id, 0) + 1
    if rows:
        db.commit()
        for book_id, count in per_book.items():
            logger.warning(
                "Book %s had %d interrupted segments, reset to pending; re-run generate-audio to resume",
                book_id,
                count,
            )
    return per_book

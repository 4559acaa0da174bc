from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.schemas import AudioSegmentOut, GenerateSegmentRequest
from app.models import AudioSegment
from app.models.audio_segment import SEGMENT_PENDING, TERMINAL_SEGMENT_STATUSES
from app.services import segment_store as store
from app.tasks.pipeline import process_segment
from app.tasks.runner import segment_runner
from app.utils.file_store import new_segment_id


router = APIRouter()


def _mark_book_processing(db: Session, book_id: str) -> None:
    book = store.get_book(db, book_id)
    if book and book.status != "processing":
        store.update_book(db, book, status="processing")


# 为书籍追加一个文本段落并生成音频
@router.post("/audio/generate", response_model=AudioSegmentOut)
def generate_segment(
    payload: GenerateSegmentRequest,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
) -> AudioSegmentOut:
    if not store.get_book(db, payload.book_id):
        raise HTTPException(status_code=404, detail="Book not found.")
    if not payload.content.strip():
        raise HTTPException(status_code=400, detail="Content cannot be empty.")

    now = datetime.utcnow()
    segment = AudioSegment(
        id=new_segment_id(),
        book_id=payload.book_id,
        segment_index=store.next_segment_index(db, payload.book_id),
        content=payload.content,
        status=SEGMENT_PENDING,
        created_at=now,
        updated_at=now,
    )
    store.save_audio_segment(db, segment)
    _mark_book_processing(db, payload.book_id)
    result = AudioSegmentOut.model_validate(segment)
    background.add_task(segment_runner.spawn, process_segment, segment.id)
    return result


# 重新提交终态段落
@router.post("/audio-segments/{segment_id}/regenerate", response_model=AudioSegmentOut, status_code=202)
def regenerate_segment(
    segment_id: str,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
) -> AudioSegmentOut:
    segment = store.get_audio_segment(db, segment_id)
    if not segment:
        raise HTTPException(status_code=404, detail="Segment not found.")
    if segment.status not in TERMINAL_SEGMENT_STATUSES:
        raise HTTPException(status_code=409, detail=f"Segment is {segment.status}.")
    if not store.reset_segment(db, segment_id):
        raise HTTPException(status_code=409, detail="Segment changed, retry.")
    _mark_book_processing(db, segment.book_id)
    segment = store.get_audio_segment(db, segment_id)
    background.add_task(segment_runner.spawn, process_segment, segment_id)
    return AudioSegmentOut.model_validate(segment)

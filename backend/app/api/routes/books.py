from __future__ import annotations

import os
from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.core.schemas import (
    AudioSegmentOut,
    BookOut,
    BookStatusResponse,
    BookUpdate,
    ProcessResponse,
    UpdateURLRequest,
)
from app.models import Book, Category, Tag
from app.services import segment_store as store
from app.services.audio_store import AudioStore
from app.tasks.pipeline import generate_book_audio, process_book
from app.tasks.runner import book_runner
from app.utils.file_store import new_catalog_id


# API 路由器：图书相关接口
router = APIRouter()


def book_to_out(book: Book) -> BookOut:
    return BookOut(
        id=book.id,
        title=book.title,
        author=book.author,
        cover_url=book.cover_url,
        file_url=book.file_url,
        page_count=book.page_count or 0,
        current_page=book.current_page or 0,
        language=book.language,
        status=book.status,
        created_at=book.created_at,
        updated_at=book.updated_at,
        categories=book.category_names,
        tags=book.tag_names,
    )


def _get_book_or_404(db: Session, book_id: str) -> Book:
    book = store.get_book(db, book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return book


# 只清理本服务保存的上传文件
def _is_uploaded_pdf(path: str | None) -> bool:
    if not path or not os.path.isfile(path):
        return False
    pdf_dir = os.path.abspath(settings.pdf_dir)
    return os.path.commonpath([pdf_dir, os.path.abspath(path)]) == pdf_dir


# 按名称取分类/标签，不存在则创建
def _resolve_named(db: Session, model, names: list[str]) -> list:
    rows = []
    for name in dict.fromkeys(item.strip() for item in names if item and item.strip()):
        row = db.query(model).filter(model.name == name).first()
        if not row:
            row = model(id=new_catalog_id(), name=name)
            db.add(row)
        rows.append(row)
    return rows


# 书籍列表（按创建时间倒序）
@router.get("", response_model=list[BookOut])
def list_books(db: Session = Depends(get_db)) -> list[BookOut]:
    rows = db.query(Book).order_by(Book.created_at.desc()).all()
    return [book_to_out(book) for book in rows]


@router.get("/{book_id}", response_model=BookOut)
def get_book(book_id: str, db: Session = Depends(get_db)) -> BookOut:
    return book_to_out(_get_book_or_404(db, book_id))


# 用户编辑：标题、封面、阅读进度、分类、标签（不影响 status）
@router.patch("/{book_id}", response_model=BookOut)
def update_book(book_id: str, payload: BookUpdate, db: Session = Depends(get_db)) -> BookOut:
    book = _get_book_or_404(db, book_id)
    if payload.title is not None:
        title = payload.title.strip()
        if not title:
            raise HTTPException(status_code=400, detail="Title cannot be empty.")
        book.title = title
    if payload.cover_url is not None:
        book.cover_url = payload.cover_url.strip() or None
    if payload.current_page is not None:
        if book.page_count and payload.current_page > book.page_count:
            raise HTTPException(status_code=400, detail="Current page exceeds page count.")
        book.current_page = payload.current_page
    if payload.categories is not None:
        book.categories = _resolve_named(db, Category, payload.categories)
    if payload.tags is not None:
        book.tags = _resolve_named(db, Tag, payload.tags)
    book.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(book)
    return book_to_out(book)


@router.delete("/{book_id}")
def delete_book(book_id: str, db: Session = Depends(get_db)) -> dict:
    book = _get_book_or_404(db, book_id)
    audio_store = AudioStore()
    local_files = [
        path
        for path in (audio_store.local_path_for(segment.audio_url) for segment in book.segments)
        if path
    ]
    source_path = book.file_url if _is_uploaded_pdf(book.file_url) else None
    # 段落随书籍级联删除
    db.delete(book)
    db.commit()

    for path in local_files:
        audio_store.remove_local(path)
    if source_path:
        try:
            os.remove(source_path)
        except OSError:
            pass
    return {"ok": True, "book_id": book_id}


# 查询书籍状态及段落状态统计
@router.get("/{book_id}/status", response_model=BookStatusResponse)
def get_book_status(book_id: str, db: Session = Depends(get_db)) -> BookStatusResponse:
    book = _get_book_or_404(db, book_id)
    return BookStatusResponse(
        id=book.id,
        status=book.status,
        segments=store.count_segments_by_status(db, book_id),
    )


@router.post("/{book_id}/update-url")
def update_book_url(book_id: str, payload: UpdateURLRequest, db: Session = Depends(get_db)) -> dict:
    book = _get_book_or_404(db, book_id)
    cloud_url = payload.cloud_url.strip()
    if not cloud_url:
        raise HTTPException(status_code=400, detail="cloudUrl is required.")
    store.update_book(db, book, file_url=cloud_url)
    return {"ok": True, "book_id": book_id}


# 触发全书处理流水线（PDF -> 段落 -> TTS）
@router.post("/{book_id}/process", response_model=ProcessResponse, status_code=202)
def process_book_route(
    book_id: str, background: BackgroundTasks, db: Session = Depends(get_db)
) -> ProcessResponse:
    book = _get_book_or_404(db, book_id)
    if not book.file_url:
        raise HTTPException(status_code=400, detail="Book has no source file.")
    # 响应返回后再派发，保证 "已受理" 先于任何完成通知
    background.add_task(book_runner.spawn, process_book, book_id)
    return ProcessResponse(book_id=book_id)


# 仅对 pending 段落生成音频，重复调用安全
@router.post("/{book_id}/generate-audio", response_model=ProcessResponse, status_code=202)
def generate_book_audio_route(
    book_id: str, background: BackgroundTasks, db: Session = Depends(get_db)
) -> ProcessResponse:
    _get_book_or_404(db, book_id)
    background.add_task(book_runner.spawn, generate_book_audio, book_id)
    return ProcessResponse(book_id=book_id)


@router.get("/{book_id}/audio-segments", response_model=list[AudioSegmentOut])
def list_audio_segments(book_id: str, db: Session = Depends(get_db)) -> list[AudioSegmentOut]:
    _get_book_or_404(db, book_id)
    return [
        AudioSegmentOut.model_validate(segment)
        for segment in store.get_audio_segments(db, book_id)
    ]

from __future__ import annotations

import os
from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.core.schemas import CoverUploadResponse, UploadRequest, UploadResponse
from app.models import Book
from app.services import segment_store as store
from app.tasks.pipeline import process_book
from app.tasks.runner import book_runner
from app.utils.file_store import is_valid_image_ext, new_book_id, save_cover, save_pdf


router = APIRouter()


def _check_size(file: UploadFile) -> None:
    size = getattr(file, "size", None)
    if size is not None and size > settings.max_upload_size:
        raise HTTPException(status_code=400, detail="File too large.")


# 通过远端地址登记书籍并立即开始处理
@router.post("", response_model=UploadResponse)
def upload_book(
    payload: UploadRequest,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
) -> UploadResponse:
    file_url = payload.file_url.strip()
    title = payload.title.strip()
    if not file_url or not title:
        raise HTTPException(status_code=400, detail="fileUrl and title are required.")

    now = datetime.utcnow()
    book = Book(
        id=new_book_id(),
        title=title,
        file_url=file_url,
        status="processing",
        language=settings.tts_default_language,
        created_at=now,
        updated_at=now,
    )
    store.save_book(db, book)
    # 响应返回后再派发后台任务
    background.add_task(book_runner.spawn, process_book, book.id)
    return UploadResponse(id=book.id, status=book.status)


# 直接上传 PDF 文件；process=true 时立即开始处理
@router.post("/pdf", response_model=UploadResponse)
def upload_pdf(
    background: BackgroundTasks,
    file: UploadFile = File(...),
    title: str | None = Form(None),
    process: bool = Form(False),
    db: Session = Depends(get_db),
) -> UploadResponse:
    if not file.filename or not file.filename.lower().endswith(".pdf"):
        raise HTTPException(status_code=400, detail="Only PDF files are supported.")
    _check_size(file)

    file.file.seek(0)
    pdf_path = save_pdf(file.file)
    now = datetime.utcnow()
    book = Book(
        id=new_book_id(),
        title=(title or "").strip() or os.path.splitext(file.filename)[0],
        file_url=pdf_path,
        status="processing" if process else "pending",
        language=settings.tts_default_language,
        created_at=now,
        updated_at=now,
    )
    store.save_book(db, book)
    if process:
        background.add_task(book_runner.spawn, process_book, book.id)
    return UploadResponse(id=book.id, status=book.status)


@router.post("/cover", response_model=CoverUploadResponse)
def upload_cover(cover: UploadFile = File(...)) -> CoverUploadResponse:
    extension = os.path.splitext(cover.filename or "")[1]
    if not is_valid_image_ext(extension):
        raise HTTPException(status_code=400, detail=f"Invalid file type: {extension or 'unknown'}")
    _check_size(cover)
    cover.file.seek(0)
    return CoverUploadResponse(cover_url=save_cover(cover.file, extension))

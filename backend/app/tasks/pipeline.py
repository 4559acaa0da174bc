from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import SessionLocal
from app.core.errors import (
    AudioUploadError,
    PDFExtractionError,
    SegmentStoreError,
    SourceDownloadError,
)
from app.core.schemas import AudioReadyEvent, AudioSegmentOut
from app.models import AudioSegment, Book
from app.models.audio_segment import (
    SEGMENT_COMPLETED,
    SEGMENT_ERROR,
    SEGMENT_GENERATING,
    SEGMENT_PENDING,
    SEGMENT_SKIPPED,
)
from app.services import segment_store as store
from app.services.audio_store import AudioStore
from app.services.notification_hub import NotificationHub, hub as default_hub
from app.services.pdf_service import extract_text, process_pdf, resolve_source
from app.services.prediction_client import PredictionClient
from app.tasks.runner import InlineRunner, TaskRunner, promotion_runner, segment_runner
from app.utils.file_store import new_segment_id

logger = logging.getLogger(__name__)


@dataclass
class PipelineDeps:
    session_factory: Callable[[], Session] = SessionLocal
    prediction_client: PredictionClient = field(default_factory=PredictionClient)
    audio_store: AudioStore = field(default_factory=AudioStore)
    hub: NotificationHub = default_hub
    segment_runner: TaskRunner = segment_runner
    promotion_runner: TaskRunner = promotion_runner
    dispatch_mode: str = field(default_factory=lambda: settings.segment_dispatch)


_deps: PipelineDeps | None = None
_deps_lock = threading.Lock()

# 同一本书的分段阶段串行执行，避免并发请求重复建段
_book_locks: Dict[str, threading.Lock] = {}
_book_locks_guard = threading.Lock()


def get_deps() -> PipelineDeps:
    global _deps
    with _deps_lock:
        if _deps is None:
            _deps = PipelineDeps()
        return _deps


def configure_pipeline(deps: PipelineDeps | None) -> None:
    global _deps
    with _deps_lock:
        _deps = deps


def _book_lock(book_id: str) -> threading.Lock:
    with _book_locks_guard:
        lock = _book_locks.get(book_id)
        if lock is None:
            lock = _book_locks[book_id] = threading.Lock()
        return lock


def build_audio_ready_event(segment: AudioSegment) -> Dict[str, Any]:
    event = AudioReadyEvent(segment=AudioSegmentOut.model_validate(segment))
    return event.model_dump(mode="json", by_alias=True)


def _refresh_book(db: Session, book_id: str) -> None:
    try:
        store.refresh_book_status(db, book_id)
    except SegmentStoreError:
        logger.exception("Error refreshing status of book %s", book_id)


# 书籍状态写入失败只记录日志，流水线继续执行
def _set_book_status(db: Session, book: Book, status: str) -> bool:
    try:
        store.update_book(db, book, status=status)
    except SegmentStoreError:
        logger.exception("Error setting book %s to %s", book.id, status)
        return False
    return True


def _mark_segment_error(db: Session, segment_id: str) -> None:
    try:
        store.transition_segment(
            db, segment_id, (SEGMENT_PENDING, SEGMENT_GENERATING), SEGMENT_ERROR, audio_url=None
        )
    except SegmentStoreError:
        logger.exception("Error marking segment %s as error", segment_id)


# 单段处理：pending -> generating -> completed / error / skipped
def process_segment(segment_id: str, deps: PipelineDeps | None = None) -> Dict[str, Any]:
    deps = deps or get_deps()
    db = deps.session_factory()
    try:
        segment = store.get_audio_segment(db, segment_id)
        if not segment:
            return {"error": "SEGMENT_NOT_FOUND", "segment_id": segment_id}
        book_id = segment.book_id

        # 非 pending 直接跳过，重复派发是安全的空操作
        if segment.status != SEGMENT_PENDING:
            logger.info("Skipping segment %s - status: %s", segment_id, segment.status)
            return {"segment_id": segment_id, "status": segment.status, "skipped": True}

        if not (segment.content or "").strip():
            if store.transition_segment(db, segment_id, SEGMENT_PENDING, SEGMENT_SKIPPED):
                logger.info("Skipping empty segment %s of book %s", segment_id, book_id)
            _refresh_book(db, book_id)
            return {"segment_id": segment_id, "status": SEGMENT_SKIPPED}

        if not store.transition_segment(db, segment_id, SEGMENT_PENDING, SEGMENT_GENERATING):
            logger.info("Segment %s was claimed by another worker", segment_id)
            return {"segment_id": segment_id, "status": SEGMENT_GENERATING, "skipped": True}

        book = store.get_book(db, book_id)
        language = book.language if book and book.language else None
        segment = store.get_audio_segment(db, segment_id)
        content = segment.content if segment else ""
        logger.info("Processing segment %s of book %s - content length: %d", segment_id, book_id, len(content))

        try:
            audio = deps.prediction_client.generate(content, language=language)
            local = deps.audio_store.store_local(audio)
        except Exception as exc:
            logger.error("Error generating audio for segment %s: %s", segment_id, exc)
            _mark_segment_error(db, segment_id)
            _refresh_book(db, book_id)
            raise

        try:
            completed = store.transition_segment(
                db, segment_id, SEGMENT_GENERATING, SEGMENT_COMPLETED, audio_url=local.url
            )
        except SegmentStoreError:
            logger.exception("Error completing segment %s, discarding %s", segment_id, local.path)
            deps.audio_store.remove_local(local.path)
            _mark_segment_error(db, segment_id)
            _refresh_book(db, book_id)
            raise

        if not completed:
            # 段落在生成期间被删除或重置，丢弃本次结果
            logger.warning("Segment %s changed during generation, discarding %s", segment_id, local.path)
            deps.audio_store.remove_local(local.path)
            return {"segment_id": segment_id, "status": "discarded"}

        # 段落已完成；通知或迁移失败都不能让书籍停在 processing
        try:
            segment = store.get_audio_segment(db, segment_id)
            if segment is not None:
                deps.hub.broadcast(book_id, build_audio_ready_event(segment))

            if deps.audio_store.promotion_enabled:
                deps.promotion_runner.spawn(
                    promote_segment_audio, segment_id, local.path, local.url, deps
                )
        finally:
            _refresh_book(db, book_id)
        return {"segment_id": segment_id, "status": SEGMENT_COMPLETED, "audio_url": local.url}
    finally:
        db.close()


# 后台任务：本地音频迁移到远端存储，成功后删除本地文件
def promote_segment_audio(
    segment_id: str, local_path: str, local_url: str, deps: PipelineDeps | None = None
) -> Dict[str, Any]:
    deps = deps or get_deps()
    db = deps.session_factory()
    try:

        def _persist(remote_url: str) -> None:
            if not store.swap_audio_url(db, segment_id, local_url, remote_url):
                logger.warning(
                    "Segment %s no longer references %s, remote copy %s left unused",
                    segment_id,
                    local_url,
                    remote_url,
                )

        try:
            remote_url = deps.audio_store.promote_to_remote(local_path, persist=_persist)
        except AudioUploadError as exc:
            logger.warning("Error uploading audio for segment %s, keeping local copy: %s", segment_id, exc)
            return {"ok": False, "segment_id": segment_id, "audio_url": local_url, "error": str(exc)}
        logger.info("Segment %s promoted to %s", segment_id, remote_url)
        return {"ok": True, "segment_id": segment_id, "audio_url": remote_url}
    finally:
        db.close()


def _run_segment(segment_id: str, deps: PipelineDeps) -> Dict[str, Any]:
    return process_segment(segment_id, deps)


def dispatch_pending_segments(book_id: str, deps: PipelineDeps | None = None) -> Dict[str, Any]:
    """Run a worker for every pending segment of the book and wait for them.

    Failures are isolated per segment; the book status is refreshed at the end.
    """
    deps = deps or get_deps()
    db = deps.session_factory()
    try:
        pending_ids = [
            segment.id for segment in store.get_audio_segments(db, book_id, [SEGMENT_PENDING])
        ]
        if not pending_ids:
            _refresh_book(db, book_id)
            return {"book_id": book_id, "dispatched": 0, "failed": 0}
        book = store.get_book(db, book_id)
        if book and book.status != "processing":
            _set_book_status(db, book, "processing")
    finally:
        db.close()

    logger.info("Found %d pending segments for book %s", len(pending_ids), book_id)
    runner = deps.segment_runner if deps.dispatch_mode == "concurrent" else InlineRunner("serial")
    outcomes = runner.map_wait(lambda segment_id: _run_segment(segment_id, deps), pending_ids)
    failed: List[str] = []
    for outcome in outcomes:
        if not outcome.ok:
            failed.append(outcome.item)
            logger.warning("Segment %s of book %s failed: %s", outcome.item, book_id, outcome.error)

    db = deps.session_factory()
    try:
        _refresh_book(db, book_id)
    finally:
        db.close()
    logger.info(
        "Completed TTS processing for book %s: %d dispatched, %d failed",
        book_id,
        len(pending_ids),
        len(failed),
    )
    return {"book_id": book_id, "dispatched": len(pending_ids), "failed": len(failed)}


# 下载/解析 PDF，逐页创建段落
def _segment_book(db: Session, book: Book) -> int:
    with resolve_source(book.file_url) as pdf_path:
        metadata = process_pdf(pdf_path, book.title)
        try:
            store.update_book(
                db,
                book,
                page_count=metadata.page_count,
                author=metadata.author,
                language=metadata.language,
            )
        except SegmentStoreError:
            logger.exception("Error saving metadata for book %s", book.id)
        pages = extract_text(pdf_path)

    created = 0
    for index, text in enumerate(pages):
        segment = AudioSegment(
            id=new_segment_id(),
            book_id=book.id,
            segment_index=index,
            content=text,
            status=SEGMENT_PENDING,
        )
        try:
            store.save_audio_segment(db, segment)
        except SegmentStoreError:
            logger.exception("Error saving segment %d of book %s", index, book.id)
            continue
        created += 1
    logger.info("Created %d segments for book %s (%d pages)", created, book.id, len(pages))
    return created


# 整本书：PDF -> 段落 -> 派发 TTS -> 书籍状态
def process_book(book_id: str, deps: PipelineDeps | None = None) -> Dict[str, Any]:
    deps = deps or get_deps()
    with _book_lock(book_id):
        db = deps.session_factory()
        try:
            book = store.get_book(db, book_id)
            if not book:
                return {"error": "BOOK_NOT_FOUND", "book_id": book_id}

            if store.count_segments(db, book_id) == 0:
                logger.info("Starting PDF processing for book %s", book_id)
                _set_book_status(db, book, "processing")
                try:
                    _segment_book(db, book)
                except (SourceDownloadError, PDFExtractionError) as exc:
                    logger.error("Error processing PDF for book %s: %s", book_id, exc)
                    _set_book_status(db, book, "error")
                    return {"error": type(exc).__name__, "book_id": book_id, "message": str(exc)}
            else:
                logger.info("Book %s already segmented, dispatching pending segments", book_id)
        finally:
            db.close()

    return dispatch_pending_segments(book_id, deps)


# "生成音频"入口：只处理 pending 段落，不重新分段
def generate_book_audio(book_id: str, deps: PipelineDeps | None = None) -> Dict[str, Any]:
    deps = deps or get_deps()
    db = deps.session_factory()
    try:
        book = store.get_book(db, book_id)
        if not book:
            return {"error": "BOOK_NOT_FOUND", "book_id": book_id}
        has_segments = store.count_segments(db, book_id) > 0
    finally:
        db.close()
    if not has_segments:
        return process_book(book_id, deps)
    return dispatch_pending_segments(book_id, deps)

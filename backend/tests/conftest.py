from __future__ import annotations

import os
import tempfile
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List

# 在导入 app 之前把运行目录指向临时目录
_RUNTIME_DIR = tempfile.mkdtemp(prefix="pagecast-tests-")
os.environ["DATA_DIR"] = _RUNTIME_DIR
os.environ["UPLOAD_DIR"] = os.path.join(_RUNTIME_DIR, "uploads")
os.environ["AUDIO_DIR"] = os.path.join(_RUNTIME_DIR, "uploads", "audio")
os.environ["SQLITE_PATH"] = os.path.join(_RUNTIME_DIR, "app.db")
os.environ["UPLOADTHING_URL"] = ""
os.environ["KOKORO_MODEL_VERSION"] = "test-version"

import pytest

from app.core.config import settings
from app.core.database import SessionLocal, build_engine, configure_engine, init_db
from app.models import AudioSegment, Book
from app.services.audio_store import AudioStore
from app.services.notification_hub import NotificationHub
from app.services.pdf_service import PDFMetadata
from app.tasks import pipeline
from app.tasks.pipeline import PipelineDeps, configure_pipeline
from app.tasks.runner import InlineRunner


class FakePredictionClient:
    """Returns deterministic bytes per text; texts in ``fail_on`` raise."""

    def __init__(self, fail_on: tuple[str, ...] = ()) -> None:
        self.fail_on = fail_on
        self.calls: List[tuple[str, str | None]] = []
        self._lock = threading.Lock()

    def generate(self, text: str, language: str | None = None) -> bytes:
        with self._lock:
            self.calls.append((text, language))
        if text in self.fail_on:
            raise RuntimeError(f"tts failed for {text!r}")
        return b"ID3" + text.encode("utf-8")


class RecordingSubscriber:
    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def send_json(self, event: Dict[str, Any]) -> None:
        self.events.append(event)


class BrokenSubscriber:
    def send_json(self, event: Dict[str, Any]) -> None:
        raise ConnectionError("socket closed")


@pytest.fixture
def runtime_dirs(tmp_path, monkeypatch):
    upload_dir = tmp_path / "uploads"
    monkeypatch.setattr(settings, "data_dir", str(tmp_path))
    monkeypatch.setattr(settings, "upload_dir", str(upload_dir))
    monkeypatch.setattr(settings, "audio_dir", str(upload_dir / "audio"))
    monkeypatch.setattr(settings, "sqlite_path", str(tmp_path / "app.db"))
    settings.ensure_dirs()
    return tmp_path


@pytest.fixture
def db_engine(runtime_dirs):
    engine = build_engine(sqlite_path=str(runtime_dirs / "app.db"))
    configure_engine(engine)
    init_db()
    yield engine
    engine.dispose()


@pytest.fixture
def db(db_engine):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_tts() -> FakePredictionClient:
    return FakePredictionClient()


@pytest.fixture
def deps(db_engine, runtime_dirs, fake_tts):
    deps = PipelineDeps(
        session_factory=SessionLocal,
        prediction_client=fake_tts,
        audio_store=AudioStore(audio_dir=settings.audio_dir, upload_url=""),
        hub=NotificationHub(),
        segment_runner=InlineRunner("segment"),
        promotion_runner=InlineRunner("promotion"),
        dispatch_mode="concurrent",
    )
    configure_pipeline(deps)
    yield deps
    configure_pipeline(None)


@pytest.fixture
def fake_pdf(monkeypatch):
    """Replaces download and PDF parsing with a fixed three page document."""

    pages = ["Page one text.", "Page two text.", "Page three text."]

    @contextmanager
    def _resolve(file_url, http_client=None) -> Iterator[str]:
        yield "/tmp/fake.pdf"

    def _process(pdf_path, filename=None) -> PDFMetadata:
        return PDFMetadata(title=filename or "Fake", page_count=len(pages), author="Jane Doe", language="en")

    monkeypatch.setattr(pipeline, "resolve_source", _resolve)
    monkeypatch.setattr(pipeline, "process_pdf", _process)
    monkeypatch.setattr(pipeline, "extract_text", lambda pdf_path: list(pages))
    return pages


def make_book(db, book_id: str = "book-1", status: str = "pending", **fields) -> Book:
    fields.setdefault("title", f"Book {book_id}")
    fields.setdefault("file_url", "https://files.example.com/book.pdf")
    book = Book(id=book_id, status=status, **fields)
    db.add(book)
    db.commit()
    return book


def make_segment(
    db, segment_id: str, book_id: str = "book-1", index: int = 0, content: str = "Hello", status: str = "pending", **fields
) -> AudioSegment:
    segment = AudioSegment(
        id=segment_id, book_id=book_id, segment_index=index, content=content, status=status, **fields
    )
    db.add(segment)
    db.commit()
    return segment

import os
import threading

import httpx
import pytest

from conftest import FakePredictionClient, RecordingSubscriber, make_book, make_segment

from app.core.errors import SegmentStoreError
from app.models import AudioSegment, Book
from app.services import segment_store
from app.services.audio_store import AudioStore
from app.tasks.pipeline import (
    dispatch_pending_segments,
    generate_book_audio,
    process_book,
    process_segment,
    promote_segment_audio,
)


def _segments(db, book_id: str = "book-1") -> list[AudioSegment]:
    db.expire_all()
    return db.query(AudioSegment).filter(AudioSegment.book_id == book_id).order_by(AudioSegment.segment_index).all()


def _book(db, book_id: str = "book-1") -> Book:
    db.expire_all()
    return db.get(Book, book_id)


def test_segment_worker_completes_and_notifies(db, deps, fake_tts) -> None:
    make_book(db, status="processing", language="fr")
    make_segment(db, "s1", content="Bonjour")
    subscriber = RecordingSubscriber()
    deps.hub.subscribe("book-1", subscriber)

    result = process_segment("s1", deps)

    segment = _segments(db)[0]
    assert result["status"] == "completed"
    assert segment.status == "completed"
    assert segment.audio_url.startswith("/audio/")
    assert fake_tts.calls == [("Bonjour", "fr")]
    assert os.path.exists(deps.audio_store.local_path_for(segment.audio_url))
    [event] = subscriber.events
    assert event["type"] == "audio_ready"
    assert event["segment"]["id"] == "s1"
    assert event["segment"]["bookId"] == "book-1"
    assert event["segment"]["audioUrl"] == segment.audio_url
    assert event["segment"]["status"] == "completed"
    assert _book(db).status == "ready"


def test_segment_worker_skips_non_pending(db, deps, fake_tts) -> None:
    make_book(db)
    make_segment(db, "s1", status="completed", audio_url="/audio/old.mp3")

    result = process_segment("s1", deps)

    assert result == {"segment_id": "s1", "status": "completed", "skipped": True}
    assert fake_tts.calls == []
    assert _segments(db)[0].audio_url == "/audio/old.mp3"


def test_segment_worker_missing_segment(deps) -> None:
    assert process_segment("ghost", deps)["error"] == "SEGMENT_NOT_FOUND"


def test_blank_segment_is_skipped_without_tts(db, deps, fake_tts) -> None:
    make_book(db, status="processing")
    make_segment(db, "s1", content="   \n ")

    assert process_segment("s1", deps)["status"] == "skipped"
    assert _segments(db)[0].status == "skipped"
    assert fake_tts.calls == []
    assert _book(db).status == "ready"


def test_tts_failure_marks_segment_error(db, deps) -> None:
    deps.prediction_client = FakePredictionClient(fail_on=("Broken",))
    make_book(db, status="processing")
    make_segment(db, "s1", content="Broken")
    subscriber = RecordingSubscriber()
    deps.hub.subscribe("book-1", subscriber)

    with pytest.raises(RuntimeError):
        process_segment("s1", deps)

    segment = _segments(db)[0]
    assert segment.status == "error"
    assert segment.audio_url is None
    assert subscriber.events == []
    assert _book(db).status == "ready"


def test_dispatch_only_touches_pending(db, deps, fake_tts) -> None:
    make_book(db, status="ready")
    make_segment(db, "a", index=0, content="One", status="completed", audio_url="/audio/a.mp3")
    make_segment(db, "b", index=1, content="Two")
    make_segment(db, "c", index=2, content="Three", status="error")

    result = dispatch_pending_segments("book-1", deps)

    assert result == {"book_id": "book-1", "dispatched": 1, "failed": 0}
    assert [call[0] for call in fake_tts.calls] == ["Two"]
    assert [s.status for s in _segments(db)] == ["completed", "completed", "error"]
    assert _book(db).status == "ready"


def test_dispatch_counts_failures_and_finishes_book(db, deps) -> None:
    deps.prediction_client = FakePredictionClient(fail_on=("Two",))
    make_book(db, status="processing")
    for index, text in enumerate(["One", "Two", "Three"]):
        make_segment(db, f"s{index}", index=index, content=text)

    result = dispatch_pending_segments("book-1", deps)

    assert result["failed"] == 1
    assert [s.status for s in _segments(db)] == ["completed", "error", "completed"]
    assert _book(db).status == "ready"


def test_serial_dispatch_keeps_document_order(db, deps, fake_tts) -> None:
    deps.dispatch_mode = "serial"
    make_book(db, status="processing")
    for index, text in enumerate(["One", "Two", "Three"]):
        make_segment(db, f"s{index}", index=index, content=text)

    dispatch_pending_segments("book-1", deps)

    assert [call[0] for call in fake_tts.calls] == ["One", "Two", "Three"]


def test_process_book_segments_pages_and_generates(db, deps, fake_tts, fake_pdf) -> None:
    make_book(db, status="pending")
    subscriber = RecordingSubscriber()
    deps.hub.subscribe("book-1", subscriber)

    result = process_book("book-1", deps)

    segments = _segments(db)
    assert result["dispatched"] == 3
    assert [s.content for s in segments] == fake_pdf
    assert [s.segment_index for s in segments] == [0, 1, 2]
    assert all(s.status == "completed" for s in segments)
    assert len(subscriber.events) == 3
    book = _book(db)
    assert book.status == "ready"
    assert (book.page_count, book.author) == (3, "Jane Doe")


def test_second_process_call_does_not_resegment(db, deps, fake_tts, fake_pdf) -> None:
    make_book(db, status="pending")
    process_book("book-1", deps)

    result = process_book("book-1", deps)

    assert result["dispatched"] == 0
    assert len(_segments(db)) == 3
    assert len(fake_tts.calls) == 3
    assert _book(db).status == "ready"


def test_concurrent_process_calls_generate_each_page_once(db, deps, fake_tts, fake_pdf) -> None:
    make_book(db, status="pending")
    threads = [threading.Thread(target=process_book, args=("book-1", deps)) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(_segments(db)) == 3
    assert sorted(call[0] for call in fake_tts.calls) == sorted(fake_pdf)
    assert _book(db).status == "ready"


def test_download_failure_marks_book_error(db, deps, monkeypatch) -> None:
    from contextlib import contextmanager

    from app.core.errors import SourceDownloadError
    from app.tasks import pipeline

    @contextmanager
    def _resolve(file_url, http_client=None):
        raise SourceDownloadError("failed to download PDF: status code 404")
        yield

    monkeypatch.setattr(pipeline, "resolve_source", _resolve)
    make_book(db, status="pending")

    result = process_book("book-1", deps)

    assert result["error"] == "SourceDownloadError"
    assert _book(db).status == "error"
    assert _segments(db) == []


def test_generate_book_audio_routes_unsegmented_book(db, deps, fake_tts, fake_pdf) -> None:
    make_book(db, status="pending")

    result = generate_book_audio("book-1", deps)

    assert result["dispatched"] == 3
    assert _book(db).status == "ready"


def test_promotion_swaps_url_and_removes_local(db, deps) -> None:
    deps.audio_store = AudioStore(
        audio_dir=deps.audio_store.audio_dir,
        upload_url="https://upload.example.com/api/upload",
        http_client=httpx.Client(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"url": "https://utfs.io/f/s1.mp3"}))
        ),
    )
    make_book(db, status="processing")
    make_segment(db, "s1", content="Hello")

    process_segment("s1", deps)

    segment = _segments(db)[0]
    assert segment.status == "completed"
    assert segment.audio_url == "https://utfs.io/f/s1.mp3"
    assert os.listdir(deps.audio_store.audio_dir) == []


def test_failed_promotion_keeps_local_audio(db, deps) -> None:
    deps.audio_store = AudioStore(
        audio_dir=deps.audio_store.audio_dir,
        upload_url="https://upload.example.com/api/upload",
        http_client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(503))),
    )
    make_book(db, status="processing")
    make_segment(db, "s1", content="Hello")
    local = deps.audio_store.store_local(b"ID3")
    make_segment(db, "s2", index=1, status="completed", audio_url=local.url)

    result = promote_segment_audio("s2", local.path, local.url, deps)

    assert result["ok"] is False
    assert os.path.exists(local.path)
    assert _segments(db)[1].audio_url == local.url


def test_failed_completion_write_marks_segment_error(db, deps, monkeypatch) -> None:
    real_transition = segment_store.transition_segment

    def failing_transition(db, segment_id, expected, status, **kwargs):
        if status == "completed":
            raise SegmentStoreError("disk I/O error")
        return real_transition(db, segment_id, expected, status, **kwargs)

    monkeypatch.setattr(segment_store, "transition_segment", failing_transition)
    make_book(db, status="processing")
    make_segment(db, "s1", content="Hello")
    subscriber = RecordingSubscriber()
    deps.hub.subscribe("book-1", subscriber)

    with pytest.raises(SegmentStoreError):
        process_segment("s1", deps)

    segment = _segments(db)[0]
    assert segment.status == "error"
    assert segment.audio_url is None
    assert os.listdir(deps.audio_store.audio_dir) == []
    assert subscriber.events == []
    assert _book(db).status == "ready"


def test_book_status_write_failure_does_not_stop_pipeline(db, deps, fake_tts, fake_pdf, monkeypatch) -> None:
    real_update = segment_store.update_book
    failures: list[str] = []

    def flaky_update(db, book, **fields):
        if fields.get("status") == "processing" and not failures:
            failures.append(book.id)
            raise SegmentStoreError("database is locked")
        return real_update(db, book, **fields)

    monkeypatch.setattr(segment_store, "update_book", flaky_update)
    make_book(db, status="pending")

    result = process_book("book-1", deps)

    assert failures == ["book-1"]
    assert result["dispatched"] == 3
    assert [s.status for s in _segments(db)] == ["completed"] * 3
    assert _book(db).status == "ready"

from __future__ import annotations

import logging
import os
import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List

import fitz
import httpx
import pymupdf4llm

from app.core.config import settings
from app.core.errors import PDFExtractionError, SourceDownloadError

logger = logging.getLogger(__name__)


@dataclass
class PDFMetadata:
    title: str
    page_count: int
    author: str
    language: str


# Markdown 标记对朗读无意义，转换为纯文本
_MD_HEADING = re.compile(r"^\s{0,3}#{1,6}\s+", re.MULTILINE)
_MD_EMPHASIS = re.compile(r"(\*\*|__|\*|_|`)(?=\S)(.+?)(?<=\S)\1")
_MD_IMAGE = re.compile(r"!\[[^\]]*\]\([^)]*\)")
_MD_LINK = re.compile(r"\[([^\]]+)\]\([^)]*\)")
_MD_TABLE_RULE = re.compile(r"^\s*\|?\s*:?-{3,}.*$", re.MULTILINE)
_MD_HRULE = re.compile(r"^\s*(?:-{3,}|\*{3,})\s*$", re.MULTILINE)


def markdown_to_speech_text(markdown: str) -> str:
    text = _MD_IMAGE.sub("", markdown)
    text = _MD_LINK.sub(r"\1", text)
    text = _MD_TABLE_RULE.sub("", text)
    text = _MD_HRULE.sub("", text)
    text = _MD_HEADING.sub("", text)
    text = _MD_EMPHASIS.sub(r"\2", text)
    text = text.replace("|", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


# 逐页提取文本（每页一个段落，保持页序）
def extract_text(pdf_path: str) -> List[str]:
    try:
        pages = pymupdf4llm.to_markdown(pdf_path, page_chunks=True)
    except Exception as exc:
        logger.error("PDF text extraction failed for %s: %s", pdf_path, exc)
        raise PDFExtractionError(f"failed to extract text from {pdf_path}: {exc}") from exc
    return [markdown_to_speech_text(str(page.get("text") or "")) for page in pages]


def _normalize_language(value: str | None) -> str:
    if not value:
        return settings.tts_default_language
    primary = value.strip().replace("_", "-").split("-", 1)[0].lower()
    return primary or settings.tts_default_language


# 读取页数、作者、语言等元信息
def process_pdf(pdf_path: str, filename: str | None = None) -> PDFMetadata:
    try:
        doc = fitz.open(pdf_path)
    except Exception as exc:
        raise PDFExtractionError(f"failed to open PDF {pdf_path}: {exc}") from exc
    try:
        metadata = doc.metadata or {}
        language = None
        try:
            kind, value = doc.xref_get_key(doc.pdf_catalog(), "Lang")
            if kind == "string":
                language = value
        except (RuntimeError, ValueError):
            language = None
        base_name = os.path.basename(filename or pdf_path)
        if base_name.lower().endswith(".pdf"):
            base_name = base_name[:-4]
        return PDFMetadata(
            title=(metadata.get("title") or "").strip() or base_name,
            page_count=doc.page_count,
            author=(metadata.get("author") or "").strip() or "Unknown",
            language=_normalize_language(language),
        )
    finally:
        doc.close()


def _is_remote(file_url: str) -> bool:
    return file_url.startswith("http://") or file_url.startswith("https://")


@contextmanager
def resolve_source(file_url: str | None, http_client: httpx.Client | None = None) -> Iterator[str]:
    """Yield a local path for the book's source PDF.

    Remote sources are downloaded to a temporary file that is removed when the
    context exits; local paths are yielded as-is.
    """
    if not file_url:
        raise SourceDownloadError("book has no source file")
    if not _is_remote(file_url):
        if not os.path.isfile(file_url):
            raise SourceDownloadError(f"source file not found: {file_url}")
        yield file_url
        return

    headers = {}
    if settings.uploadthing_token:
        headers["Authorization"] = f"Bearer {settings.uploadthing_token}"
    fd, tmp_path = tempfile.mkstemp(prefix="book-", suffix=".pdf")
    try:
        try:
            with os.fdopen(fd, "wb") as handle:
                client = http_client or httpx.Client(
                    timeout=settings.tts_request_timeout_seconds, follow_redirects=True
                )
                try:
                    with client.stream("GET", file_url, headers=headers) as response:
                        if response.status_code != 200:
                            raise SourceDownloadError(
                                f"failed to download PDF: status code {response.status_code}"
                            )
                        for chunk in response.iter_bytes():
                            handle.write(chunk)
                finally:
                    if http_client is None:
                        client.close()
        except httpx.HTTPError as exc:
            raise SourceDownloadError(f"failed to download PDF: {exc}") from exc
        except OSError as exc:
            raise SourceDownloadError(f"failed to write temp file: {exc}") from exc
        yield tmp_path
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)

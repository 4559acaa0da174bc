from __future__ import annotations

import os
import shutil
from typing import BinaryIO
from uuid import uuid4

from app.core.config import settings


# 生成书籍唯一 ID
def new_book_id() -> str:
    return str(uuid4())


# 生成段落 ID
def new_segment_id() -> str:
    return str(uuid4())


def new_catalog_id() -> str:
    return uuid4().hex


# 生成本地音频文件名（防冲突）
def new_audio_filename() -> str:
    return f"tts-{uuid4()}.mp3"


# 保存上传的 PDF，返回本地路径
def save_pdf(source: BinaryIO) -> str:
    os.makedirs(settings.pdf_dir, exist_ok=True)
    path = os.path.join(settings.pdf_dir, f"{uuid4()}.pdf")
    with open(path, "wb") as buffer:
        shutil.copyfileobj(source, buffer)
    return path


# 保存封面图片，返回可访问 URL
def save_cover(source: BinaryIO, extension: str) -> str:
    os.makedirs(settings.cover_dir, exist_ok=True)
    filename = f"{uuid4()}{extension.lower()}"
    with open(os.path.join(settings.cover_dir, filename), "wb") as buffer:
        shutil.copyfileobj(source, buffer)
    return f"/covers/{filename}"


def is_valid_image_ext(extension: str) -> bool:
    return extension.lower() in {".jpg", ".jpeg", ".png", ".gif", ".webp"}

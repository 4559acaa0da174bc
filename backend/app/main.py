from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from app.api.routes import audio, books, catalog, upload, ws
from app.core.config import settings
from app.core.database import SessionLocal, init_db
from app.services.maintenance import cleanup_duplicate_books, requeue_orphaned_segments
from app.tasks.runner import shutdown_runners


logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# 应用入口：初始化 FastAPI 实例
app = FastAPI(title="PageCast", root_path=settings.root_path or "")

# 配置 CORS，允许前端访问后端 API
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api_prefix = settings.api_prefix
if api_prefix is None:
    api_prefix = "" if (settings.root_path or "").strip() else "/api"
api_prefix = api_prefix.rstrip("/")
app.include_router(books.router, prefix=f"{api_prefix}/books", tags=["books"])
app.include_router(upload.router, prefix=f"{api_prefix}/upload", tags=["upload"])
app.include_router(audio.router, prefix=api_prefix, tags=["audio"])
app.include_router(catalog.router, prefix=api_prefix, tags=["catalog"])
app.include_router(ws.router, prefix="/ws", tags=["ws"])

# 本地音频与封面以静态文件提供
settings.ensure_dirs()
app.mount("/audio", StaticFiles(directory=settings.audio_dir), name="audio")
app.mount("/covers", StaticFiles(directory=settings.cover_dir), name="covers")


# 启动事件：建表并修复上次中断遗留的状态
@app.on_event("startup")
def on_startup() -> None:
    settings.ensure_dirs()
    init_db()
    with SessionLocal() as db:
        requeue_orphaned_segments(db)
        if settings.cleanup_duplicates_on_startup:
            cleanup_duplicate_books(db)
    logger.info("PageCast started, env=%s", settings.app_env)


@app.on_event("shutdown")
def on_shutdown() -> None:
    shutdown_runners(wait=False)

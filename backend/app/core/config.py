from __future__ import annotations

import os
from pydantic_settings import BaseSettings


# 应用配置：统一管理环境变量与默认值
class Settings(BaseSettings):
    # 运行环境标识（便于日志、调试、区分开发/生产）
    app_env: str = "dev"
    # FastAPI 根路径（反向代理或子路径部署时使用）
    root_path: str = ""
    # API 前缀（兼容多版本路由或网关转发）
    api_prefix: str | None = None
    # 日志级别
    log_level: str = "INFO"
    # 项目运行时数据根目录（上传文件/音频/数据库等）
    data_dir: str = "data"
    # 上传文件存放目录（PDF 与封面）
    upload_dir: str = "data/uploads"
    # 本地音频目录（生成后立即可播放，随后迁移到远端存储）
    audio_dir: str = "data/uploads/audio"
    # SQLite 数据库文件路径（默认本地文件）
    sqlite_path: str = "data/app.db"
    # 可选数据库连接串（优先用于 PostgreSQL 等外部数据库）
    database_url: str | None = None
    # 单个上传文件大小上限（字节）
    max_upload_size: int = 10 << 20

    # Replicate 预测接口地址
    replicate_api_url: str = "https://api.replicate.com/v1"
    # Replicate API Token
    replicate_api_token: str | None = None
    # Kokoro TTS 模型版本号（必填，否则无法创建预测）
    kokoro_model_version: str | None = None
    # 默认朗读语言
    tts_default_language: str = "en"
    # 轮询间隔（秒）
    tts_poll_interval_seconds: float = 2.0
    # 最大轮询次数（60 次约 2 分钟）
    tts_max_poll_attempts: int = 60
    # 单次 HTTP 请求超时（秒）
    tts_request_timeout_seconds: int = 60

    # UploadThing 上传地址（留空则只保留本地音频）
    uploadthing_url: str | None = None
    # UploadThing Bearer Token
    uploadthing_token: str | None = None

    # 段落派发方式：concurrent（线程池并发）或 serial（按顺序）
    segment_dispatch: str = "concurrent"
    # 同时进行的 TTS 任务上限
    segment_workers: int = 4
    # 同时处理的书籍数量
    book_workers: int = 2
    # 远端迁移并发数
    promotion_workers: int = 2
    # WebSocket 推送超时（秒）
    notification_send_timeout_seconds: float = 5.0
    # 启动时按标题清理重复书籍
    cleanup_duplicates_on_startup: bool = False

    # 允许跨域访问的前端地址列表（逗号分隔）
    cors_origins: str = "http://localhost:3000"

    # Pydantic Settings 行为配置
    class Config:
        env_file = (
            os.getenv("APP_ENV_FILE") or "config/.env",
            "backend/config/.env",
            ".env",
        )
        case_sensitive = False
        extra = "ignore" if os.getenv("APP_ENV", "dev").lower() == "dev" else "forbid"

    # 解析 CORS 允许域名列表（供中间件直接使用）
    @property
    def cors_origin_list(self) -> list[str]:
        return [item.strip() for item in self.cors_origins.split(",") if item.strip()]

    # PDF 存放目录
    @property
    def pdf_dir(self) -> str:
        return os.path.join(self.upload_dir, "pdfs")

    # 封面存放目录
    @property
    def cover_dir(self) -> str:
        return os.path.join(self.upload_dir, "covers")

    # 确保运行时数据目录存在（启动时创建必要目录）
    def ensure_dirs(self) -> None:
        for path in (
            self.data_dir,
            self.upload_dir,
            self.pdf_dir,
            self.cover_dir,
            self.audio_dir,
            os.path.dirname(self.sqlite_path),
        ):
            if path:
                os.makedirs(path, exist_ok=True)


# 全局配置实例
settings = Settings()

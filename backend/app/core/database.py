from __future__ import annotations

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from app.core.config import settings


# ORM 基类：所有模型继承它
class Base(DeclarativeBase):
    pass


# 创建数据库引擎（默认 SQLite）
def build_engine(database_url: str | None = None, sqlite_path: str | None = None) -> Engine:
    url = database_url if database_url is not None else settings.database_url
    if url:
        engine = create_engine(url, future=True, pool_pre_ping=True)
    else:
        settings.ensure_dirs()
        engine = create_engine(
            f"sqlite:///{sqlite_path or settings.sqlite_path}",
            connect_args={"check_same_thread": False},
            future=True,
        )
    if engine.dialect.name == "sqlite":
        # SQLite 默认不校验外键，段落依赖 ON DELETE CASCADE
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


# 全局数据库引擎
engine = build_engine()
# 会话工厂
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


# 重新绑定引擎（测试或多数据库部署时使用）
def configure_engine(new_engine: Engine) -> None:
    global engine
    engine = new_engine
    SessionLocal.configure(bind=new_engine)


# 初始化数据库表
def init_db() -> None:
    from app.models import audio_segment, book, catalog  # noqa: F401

    Base.metadata.create_all(bind=engine)
    if engine.dialect.name != "sqlite":
        return
    with engine.begin() as conn:
        segment_columns = {
            row[1] for row in conn.execute(text("PRAGMA table_info(audio_segments)"))
        }
        if "version" not in segment_columns:
            conn.execute(
                text("ALTER TABLE audio_segments ADD COLUMN version INTEGER NOT NULL DEFAULT 0")
            )
        if "segment_index" not in segment_columns:
            conn.execute(
                text("ALTER TABLE audio_segments ADD COLUMN segment_index INTEGER NOT NULL DEFAULT 0")
            )


# FastAPI 依赖：获取数据库会话
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

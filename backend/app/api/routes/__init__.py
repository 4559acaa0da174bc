from app.api.routes.books import router as books_router
from app.api.routes.upload import router as upload_router
from app.api.routes.audio import router as audio_router
from app.api.routes.catalog import router as catalog_router
from app.api.routes.ws import router as ws_router

# 对外导出路由
__all__ = ["books_router", "upload_router", "audio_router", "catalog_router", "ws_router"]

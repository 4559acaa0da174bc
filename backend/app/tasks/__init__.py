from app.tasks.pipeline import (
    process_book,
    generate_book_audio,
    process_segment,
    promote_segment_audio,
    dispatch_pending_segments,
)

# 对外导出任务函数
__all__ = [
    "process_book",
    "generate_book_audio",
    "process_segment",
    "promote_segment_audio",
    "dispatch_pending_segments",
]

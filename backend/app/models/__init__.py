from app.models.catalog import Category, Tag
from app.models.book import Book
from app.models.audio_segment import AudioSegment

__all__ = [
    "Book",
    "AudioSegment",
    "Category",
    "Tag",
]

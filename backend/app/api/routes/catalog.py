from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.schemas import CategoryOut, TagOut
from app.models import Category, Tag


router = APIRouter()


@router.get("/categories", response_model=list[CategoryOut])
def list_categories(db: Session = Depends(get_db)) -> list[CategoryOut]:
    rows = db.query(Category).order_by(Category.name).all()
    return [CategoryOut.model_validate(row) for row in rows]


@router.get("/tags", response_model=list[TagOut])
def list_tags(db: Session = Depends(get_db)) -> list[TagOut]:
    rows = db.query(Tag).order_by(Tag.name).all()
    return [TagOut.model_validate(row) for row in rows]

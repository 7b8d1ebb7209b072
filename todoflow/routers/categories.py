import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from todoflow.database import SessionDep
from todoflow.dependencies import CurrentUserDep
from todoflow.models import Category, CategoryCreate, CategoryRead, Todo

router = APIRouter(prefix="/api/categories", tags=["categories"])
logger = logging.getLogger(__name__)


def get_owned_category(session: Session, category_id: int, user_id: int) -> Category:
    category = session.exec(
        select(Category).where(Category.id == category_id, Category.user_id == user_id)
    ).first()
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


def _clean_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Category name is required")
    return name


def _save(session: Session, category: Category, action: str) -> Category:
    session.add(category)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise HTTPException(status_code=409, detail="Category already exists")
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Failed to {action} category: {exc}")
        raise HTTPException(status_code=500, detail=f"Failed to {action} category")
    session.refresh(category)
    return category


@router.get("/", response_model=list[CategoryRead])
def list_categories(session: SessionDep, current_user: CurrentUserDep, search: str | None = None):
    query = select(Category).where(Category.user_id == current_user.user_id)
    if search:
        query = query.where(Category.name.ilike(f"%{search}%"))
    return session.exec(query.order_by(Category.name)).all()


@router.post("/", response_model=CategoryRead, status_code=201)
def create_category(category_create: CategoryCreate, session: SessionDep, current_user: CurrentUserDep):
    category = Category(name=_clean_name(category_create.name), user_id=current_user.user_id)
    return _save(session, category, "create")


@router.get("/{category_id}", response_model=CategoryRead)
def get_category(category_id: int, session: SessionDep, current_user: CurrentUserDep):
    return get_owned_category(session, category_id, current_user.user_id)


@router.put("/{category_id}", response_model=CategoryRead)
def update_category(
    category_id: int, category_update: CategoryCreate, session: SessionDep, current_user: CurrentUserDep
):
    name = _clean_name(category_update.name)
    category = get_owned_category(session, category_id, current_user.user_id)
    category.name = name
    category.updated_at = datetime.now(timezone.utc)
    return _save(session, category, "update")


@router.delete("/{category_id}", status_code=204)
def delete_category(
    category_id: int, session: SessionDep, current_user: CurrentUserDep, force: bool = False
):
    """Refuse while todos use the category unless ``force``; forced deletes uncategorize them."""
    category = get_owned_category(session, category_id, current_user.user_id)
    todo_count = session.exec(
        select(func.count()).select_from(Todo).where(Todo.category_id == category_id)
    ).one()
    if todo_count and not force:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot delete category with {todo_count} associated todo(s)",
        )

    session.delete(category)
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Failed to delete category {category_id}: {exc}")
        raise HTTPException(status_code=500, detail="Failed to delete category")
    return None

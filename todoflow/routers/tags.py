import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from todoflow.database import SessionDep
from todoflow.dependencies import CurrentUserDep
from todoflow.models import Tag, TagCreate, TagRead, TodoTagLink

router = APIRouter(prefix="/api/tags", tags=["tags"])
logger = logging.getLogger(__name__)


def get_owned_tag(session: Session, tag_id: int, user_id: int) -> Tag:
    tag = session.exec(select(Tag).where(Tag.id == tag_id, Tag.user_id == user_id)).first()
    if not tag:
        raise HTTPException(status_code=404, detail="Tag not found")
    return tag


def _save(session: Session, tag: Tag) -> Tag:
    session.add(tag)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise HTTPException(status_code=409, detail="Tag already exists")
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Failed to save tag: {exc}")
        raise HTTPException(status_code=500, detail="Failed to save tag")
    session.refresh(tag)
    return tag


@router.get("/", response_model=list[TagRead])
def list_tags(session: SessionDep, current_user: CurrentUserDep, search: str | None = None):
    query = select(Tag).where(Tag.user_id == current_user.user_id)
    if search:
        query = query.where(Tag.name.ilike(f"%{search}%"))
    return session.exec(query.order_by(Tag.name)).all()


@router.post("/", response_model=TagRead, status_code=201)
def create_tag(tag_create: TagCreate, session: SessionDep, current_user: CurrentUserDep):
    name = (tag_create.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Tag name is required")
    return _save(session, Tag(name=name, user_id=current_user.user_id))


@router.get("/{tag_id}", response_model=TagRead)
def get_tag(tag_id: int, session: SessionDep, current_user: CurrentUserDep):
    return get_owned_tag(session, tag_id, current_user.user_id)


@router.put("/{tag_id}", response_model=TagRead)
def update_tag(tag_id: int, tag_update: TagCreate, session: SessionDep, current_user: CurrentUserDep):
    name = (tag_update.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Tag name is required")
    tag = get_owned_tag(session, tag_id, current_user.user_id)
    tag.name = name
    tag.updated_at = datetime.now(timezone.utc)
    return _save(session, tag)


@router.delete("/{tag_id}", status_code=204)
def delete_tag(tag_id: int, session: SessionDep, current_user: CurrentUserDep, force: bool = False):
    """Refuse while todos carry the tag unless ``force``; forced deletes detach it first."""
    tag = get_owned_tag(session, tag_id, current_user.user_id)
    todo_count = session.exec(
        select(func.count()).select_from(TodoTagLink).where(TodoTagLink.tag_id == tag_id)
    ).one()
    if todo_count and not force:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot delete tag with {todo_count} associated todo(s)",
        )

    session.delete(tag)
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Failed to delete tag {tag_id}: {exc}")
        raise HTTPException(status_code=500, detail="Failed to delete tag")
    logger.info(f"Deleted tag {tag_id}, detached from {todo_count} todo(s)")
    return None

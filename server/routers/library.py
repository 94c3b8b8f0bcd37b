"""
The personal library: bookmarks, tags and collections.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth import get_current_user, get_optional_user
from database import get_db
from errors import AppError
from models import Bookmark, Collection, CollectionItem, Repository, RepositoryTag, Tag, User
from schemas import (
    BookmarkCreate, BookmarkInfo, CollectionCreate, CollectionDetail, CollectionInfo, CollectionItemCreate,
    CollectionItemInfo, CollectionUpdate, TagAssign, TagCreate, TagInfo,
)
from services.analysis import build_repository_info, record_activity

router = APIRouter(tags=["library"])


def _get_repository(db: Session, repository_id: int) -> Repository:
    repo = db.get(Repository, repository_id)
    if repo is None:
        raise AppError("NOT_FOUND", "Repository not found.")
    return repo


# =============================================================================
# BOOKMARKS
# =============================================================================

def _bookmark_info(bookmark: Bookmark) -> BookmarkInfo:
    return BookmarkInfo(
        id=bookmark.id,
        repository=build_repository_info(bookmark.repository),
        notes=bookmark.notes,
        created_at=bookmark.created_at,
    )


@router.post("/api/bookmarks", response_model=BookmarkInfo, status_code=201)
def add_bookmark(body: BookmarkCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    _get_repository(db, body.repository_id)
    bookmark = Bookmark(user_id=user.id, repository_id=body.repository_id, notes=body.notes)
    db.add(bookmark)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise AppError("CONFLICT", "Repository is already bookmarked.")
    record_activity(db, user.id, "bookmarked", body.repository_id)
    db.commit()
    return _bookmark_info(bookmark)


@router.get("/api/bookmarks", response_model=list[BookmarkInfo])
def list_bookmarks(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    bookmarks = (
        db.query(Bookmark)
        .filter(Bookmark.user_id == user.id)
        .order_by(Bookmark.created_at.desc(), Bookmark.id.desc())
        .all()
    )
    return [_bookmark_info(b) for b in bookmarks]


@router.delete("/api/bookmarks/{repository_id}")
def delete_bookmark(repository_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    deleted = db.query(Bookmark).filter(
        Bookmark.user_id == user.id, Bookmark.repository_id == repository_id
    ).delete()
    if not deleted:
        raise AppError("NOT_FOUND", "Bookmark not found.")
    db.commit()
    return {"success": True}


# =============================================================================
# TAGS
# =============================================================================

def _get_tag(db: Session, user: User, tag_id: int) -> Tag:
    tag = db.get(Tag, tag_id)
    if tag is None or tag.user_id != user.id:
        raise AppError("NOT_FOUND", "Tag not found.")
    return tag


@router.post("/api/tags", response_model=TagInfo, status_code=201)
def create_tag(body: TagCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    tag = Tag(user_id=user.id, name=body.name.strip(), color=body.color)
    db.add(tag)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise AppError("CONFLICT", f"A tag named '{body.name}' already exists.")
    return tag


@router.get("/api/tags", response_model=list[TagInfo])
def list_tags(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return db.query(Tag).filter(Tag.user_id == user.id).order_by(Tag.name).all()


@router.delete("/api/tags/{tag_id}")
def delete_tag(tag_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    tag = _get_tag(db, user, tag_id)
    db.query(RepositoryTag).filter(RepositoryTag.tag_id == tag.id).delete()
    db.delete(tag)
    db.commit()
    return {"success": True}


@router.post("/api/repositories/{repository_id}/tags", response_model=TagInfo, status_code=201)
def tag_repository(repository_id: int, body: TagAssign, user: User = Depends(get_current_user),
                   db: Session = Depends(get_db)):
    _get_repository(db, repository_id)
    tag = _get_tag(db, user, body.tag_id)
    db.add(RepositoryTag(repository_id=repository_id, tag_id=tag.id, user_id=user.id))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise AppError("CONFLICT", "Repository already has this tag.")
    return tag


@router.delete("/api/repositories/{repository_id}/tags/{tag_id}")
def untag_repository(repository_id: int, tag_id: int, user: User = Depends(get_current_user),
                     db: Session = Depends(get_db)):
    deleted = db.query(RepositoryTag).filter(
        RepositoryTag.repository_id == repository_id,
        RepositoryTag.tag_id == tag_id,
        RepositoryTag.user_id == user.id,
    ).delete()
    if not deleted:
        raise AppError("NOT_FOUND", "Tag is not assigned to this repository.")
    db.commit()
    return {"success": True}


@router.get("/api/repositories/{repository_id}/tags", response_model=list[TagInfo])
def repository_tags(repository_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    links = (
        db.query(RepositoryTag)
        .filter(RepositoryTag.repository_id == repository_id, RepositoryTag.user_id == user.id)
        .all()
    )
    return [link.tag for link in links]


# =============================================================================
# COLLECTIONS
# =============================================================================

def _collection_info(collection: Collection) -> dict:
    return {
        "id": collection.id,
        "user_id": collection.user_id,
        "name": collection.name,
        "description": collection.description,
        "is_public": bool(collection.is_public),
        "icon": collection.icon,
        "color": collection.color,
        "item_count": len(collection.items),
        "created_at": collection.created_at,
        "updated_at": collection.updated_at,
    }


def _collection_detail(collection: Collection) -> CollectionDetail:
    items = [
        CollectionItemInfo(
            id=item.id,
            repository=build_repository_info(item.repository),
            position=item.position,
            notes=item.notes,
            added_at=item.added_at,
        )
        for item in collection.items
    ]
    return CollectionDetail(**_collection_info(collection), items=items)


def _owned_collection(db: Session, user: User, collection_id: int) -> Collection:
    collection = db.get(Collection, collection_id)
    if collection is None or collection.user_id != user.id:
        raise AppError("NOT_FOUND", "Collection not found.")
    return collection


@router.post("/api/collections", response_model=CollectionInfo, status_code=201)
def create_collection(body: CollectionCreate, user: User = Depends(get_current_user),
                      db: Session = Depends(get_db)):
    data = body.model_dump()
    data["is_public"] = 1 if data["is_public"] else 0
    collection = Collection(user_id=user.id, **data)
    db.add(collection)
    db.commit()
    return _collection_info(collection)


@router.get("/api/collections", response_model=list[CollectionInfo])
def list_collections(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    collections = (
        db.query(Collection)
        .filter(Collection.user_id == user.id)
        .order_by(Collection.updated_at.desc(), Collection.id.desc())
        .all()
    )
    return [_collection_info(c) for c in collections]


@router.get("/api/collections/{collection_id}", response_model=CollectionDetail)
def get_collection(collection_id: int, user: User | None = Depends(get_optional_user),
                   db: Session = Depends(get_db)):
    """Public collections are readable by anyone; private ones only by their owner."""
    collection = db.get(Collection, collection_id)
    if collection is None:
        raise AppError("NOT_FOUND", "Collection not found.")
    if not collection.is_public and (user is None or user.id != collection.user_id):
        raise AppError("NOT_FOUND", "Collection not found.")
    return _collection_detail(collection)


@router.put("/api/collections/{collection_id}", response_model=CollectionInfo)
def update_collection(collection_id: int, body: CollectionUpdate, user: User = Depends(get_current_user),
                      db: Session = Depends(get_db)):
    collection = _owned_collection(db, user, collection_id)
    for field, value in body.model_dump(exclude_unset=True).items():
        if value is None:
            continue
        if field == "is_public":
            value = 1 if value else 0
        setattr(collection, field, value)
    db.commit()
    return _collection_info(collection)


@router.delete("/api/collections/{collection_id}")
def delete_collection(collection_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    db.delete(_owned_collection(db, user, collection_id))
    db.commit()
    return {"success": True}


@router.post("/api/collections/{collection_id}/items", response_model=CollectionDetail, status_code=201)
def add_collection_item(collection_id: int, body: CollectionItemCreate, user: User = Depends(get_current_user),
                        db: Session = Depends(get_db)):
    collection = _owned_collection(db, user, collection_id)
    _get_repository(db, body.repository_id)

    last = db.query(func.max(CollectionItem.position)).filter(
        CollectionItem.collection_id == collection.id
    ).scalar()
    db.add(CollectionItem(
        collection_id=collection.id,
        repository_id=body.repository_id,
        position=0 if last is None else last + 1,
        notes=body.notes,
    ))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise AppError("CONFLICT", "Repository is already in this collection.")
    db.refresh(collection)
    return _collection_detail(collection)


@router.delete("/api/collections/{collection_id}/items/{repository_id}")
def remove_collection_item(collection_id: int, repository_id: int, user: User = Depends(get_current_user),
                           db: Session = Depends(get_db)):
    collection = _owned_collection(db, user, collection_id)
    deleted = db.query(CollectionItem).filter(
        CollectionItem.collection_id == collection.id, CollectionItem.repository_id == repository_id
    ).delete()
    if not deleted:
        raise AppError("NOT_FOUND", "Repository is not in this collection.")
    db.commit()
    return {"success": True}

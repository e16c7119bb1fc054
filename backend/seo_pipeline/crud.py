from typing import Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from . import schemas


def get_serp_entry(db: Session, entry_id: str, now: float) -> Optional[schemas.SerpCacheEntry]:
    """Returns the search entry unless it has expired."""
    stmt = select(schemas.SerpCacheEntry).where(
        schemas.SerpCacheEntry.id == entry_id,
        schemas.SerpCacheEntry.expires_at > now,
    )
    return db.execute(stmt).scalar_one_or_none()


def upsert_serp_entry(
    db: Session, entry_id: str, keyword: str, geo: str, results: dict, now: float, expires_at: float
) -> schemas.SerpCacheEntry:
    entry = db.get(schemas.SerpCacheEntry, entry_id)
    if entry is None:
        entry = schemas.SerpCacheEntry(id=entry_id)
        db.add(entry)
    entry.keyword = keyword
    entry.geo = geo
    entry.results = results
    entry.created_at = now
    entry.expires_at = expires_at
    db.commit()
    return entry


def get_page_entry(db: Session, url: str, now: float) -> Optional[schemas.PageCacheEntry]:
    stmt = select(schemas.PageCacheEntry).where(
        schemas.PageCacheEntry.url == url,
        schemas.PageCacheEntry.expires_at > now,
    )
    return db.execute(stmt).scalar_one_or_none()


def get_page_entries(db: Session, urls: List[str], now: float) -> Dict[str, schemas.PageCacheEntry]:
    if not urls:
        return {}
    stmt = select(schemas.PageCacheEntry).where(
        schemas.PageCacheEntry.url.in_(urls),
        schemas.PageCacheEntry.expires_at > now,
    )
    return {entry.url: entry for entry in db.execute(stmt).scalars()}


def upsert_page_entry(
    db: Session,
    url: str,
    title: Optional[str],
    content: str,
    word_count: int,
    now: float,
    expires_at: float,
) -> schemas.PageCacheEntry:
    entry = db.get(schemas.PageCacheEntry, url)
    if entry is None:
        entry = schemas.PageCacheEntry(url=url)
        db.add(entry)
    entry.title = title
    entry.content = content
    entry.word_count = word_count
    entry.scraped_at = now
    entry.expires_at = expires_at
    db.commit()
    return entry


def delete_expired(db: Session, now: float) -> Dict[str, int]:
    serp = db.execute(delete(schemas.SerpCacheEntry).where(schemas.SerpCacheEntry.expires_at <= now))
    pages = db.execute(delete(schemas.PageCacheEntry).where(schemas.PageCacheEntry.expires_at <= now))
    db.commit()
    return {"serp": serp.rowcount, "pages": pages.rowcount}


def delete_all(db: Session) -> None:
    db.execute(delete(schemas.SerpCacheEntry))
    db.execute(delete(schemas.PageCacheEntry))
    db.commit()


def count_entries(db: Session) -> Dict[str, int]:
    return {
        "serp": db.scalar(select(func.count()).select_from(schemas.SerpCacheEntry)) or 0,
        "pages": db.scalar(select(func.count()).select_from(schemas.PageCacheEntry)) or 0,
    }

import enum

from sqlalchemy import Column, Float, Index, Integer, JSON, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class WorkflowStatus(str, enum.Enum):
    PENDING = "pending"
    RESEARCHING = "researching"
    OUTLINING = "outlining"
    WRITING = "writing"
    EDITING = "editing"
    COMPLETED = "completed"
    FAILED = "failed"


class GenerationStatus(str, enum.Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SerpCacheEntry(Base):
    __tablename__ = "serp_cache"

    id = Column(String(32), primary_key=True)
    keyword = Column(String, nullable=False)
    geo = Column(String, nullable=False)
    results = Column(JSON, nullable=False)  # {"results": [...], "people_also_ask": [...]}
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False, index=True)

    __table_args__ = (Index("idx_serp_keyword_geo", "keyword", "geo"),)


class PageCacheEntry(Base):
    __tablename__ = "page_cache"

    url = Column(String, primary_key=True)
    title = Column(String, nullable=True)
    content = Column(Text, nullable=False)
    word_count = Column(Integer, nullable=False)
    scraped_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False, index=True)

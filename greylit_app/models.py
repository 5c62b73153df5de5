"""
================================================================================
Greylit - Database Models
================================================================================
SQLAlchemy models for the persisted shapes of the search pipeline.

  - SearchRequest: one submitted search strategy and its lifecycle status
  - SearchResult: a canonical result tied to exactly one SearchRequest.
    deduped=True means it survived deduplication; duplicates are kept with
    deduped=False so relationships can point at both rows.
  - DuplicateRelationship: immutable (original -> duplicate) link
  - SearchCache: database tier of the processed-response cache
================================================================================
"""

from datetime import datetime, timezone
import uuid
import os
from sqlalchemy import (
    Column, String, Integer, DateTime, Boolean, ForeignKey, Text, JSON, Float,
    UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import relationship, declarative_base, declared_attr
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


# UUID type - use String for SQLite, UUID for PostgreSQL
def UUIDType():
    """Returns appropriate UUID column type for current database."""
    db_url = os.environ.get('DATABASE_URL', '')
    if db_url.startswith('postgres://') or db_url.startswith('postgresql://'):
        return PG_UUID(as_uuid=False)
    return String(36)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


Base = declarative_base()

# =============================================================================
# MIXINS
# =============================================================================

class TimestampMixin:
    """Adds created_at and updated_at timestamps to models."""
    @declared_attr
    def created_at(cls):
        return Column(DateTime(timezone=True), default=utcnow, nullable=False)

    @declared_attr
    def updated_at(cls):
        return Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


def _iso(value):
    return value.isoformat() if value else None

# =============================================================================
# SEARCH REQUESTS
# =============================================================================

class SearchRequest(Base, TimestampMixin):
    """A user's search strategy and the state of its processing."""
    __tablename__ = 'search_requests'

    id = Column(UUIDType(), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(255), nullable=True, index=True)

    query = Column(Text, nullable=False)
    filters = Column(JSON, default=dict)
    providers = Column(JSON, default=list)
    search_title = Column(String(500))
    is_saved = Column(Boolean, default=False, nullable=False)

    # pending, processing, completed, error
    status = Column(String(20), default='pending', nullable=False)
    error_message = Column(Text)
    error_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    results = relationship(
        "SearchResult", back_populates="search_request",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    __table_args__ = (
        Index('ix_search_requests_owner_created', 'owner_id', 'created_at'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'owner_id': self.owner_id,
            'query': self.query,
            'filters': self.filters or {},
            'providers': self.providers or [],
            'search_title': self.search_title,
            'is_saved': self.is_saved,
            'status': self.status,
            'error_message': self.error_message,
            'error_at': _iso(self.error_at),
            'completed_at': _iso(self.completed_at),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

# =============================================================================
# RESULTS
# =============================================================================

class SearchResult(Base):
    """One persisted result row. Never reassigned to another request."""
    __tablename__ = 'search_results'

    id = Column(UUIDType(), primary_key=True, default=lambda: str(uuid.uuid4()))
    search_request_id = Column(
        UUIDType(), ForeignKey('search_requests.id', ondelete='CASCADE'), nullable=False
    )

    provider = Column(String(50), nullable=False)
    title = Column(Text, nullable=False)
    url = Column(Text, nullable=False)
    snippet = Column(Text)
    rank = Column(Integer)
    result_type = Column(String(50), default='organic')
    search_engine = Column(String(50))

    # Response-level details
    total_results = Column(Integer)
    credits_used = Column(Integer)
    search_id = Column(String(255))
    search_url = Column(Text)
    related_searches = Column(JSON, default=list)
    similar_questions = Column(JSON, default=list)

    # Unmapped provider fields, kept for audit
    raw_response = Column(JSON, default=dict)

    deduped = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    search_request = relationship("SearchRequest", back_populates="results")

    __table_args__ = (
        Index('ix_search_results_request_rank', 'search_request_id', 'rank'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'search_request_id': self.search_request_id,
            'provider': self.provider,
            'title': self.title,
            'url': self.url,
            'snippet': self.snippet,
            'rank': self.rank,
            'result_type': self.result_type,
            'search_engine': self.search_engine,
            'total_results': self.total_results,
            'credits_used': self.credits_used,
            'search_id': self.search_id,
            'search_url': self.search_url,
            'related_searches': self.related_searches or [],
            'similar_questions': self.similar_questions or [],
            'metadata': self.raw_response or {},
            'deduped': self.deduped,
            'created_at': _iso(self.created_at),
        }


class DuplicateRelationship(Base):
    """Immutable original -> duplicate link between two result rows."""
    __tablename__ = 'duplicate_relationships'

    id = Column(UUIDType(), primary_key=True, default=lambda: str(uuid.uuid4()))
    original_result_id = Column(
        UUIDType(), ForeignKey('search_results.id', ondelete='CASCADE'), nullable=False
    )
    duplicate_result_id = Column(
        UUIDType(), ForeignKey('search_results.id', ondelete='CASCADE'), nullable=False
    )
    confidence_score = Column(Float, nullable=False)
    reason = Column(String(50))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('original_result_id', 'duplicate_result_id', name='uq_duplicate_pair'),
        CheckConstraint('original_result_id <> duplicate_result_id', name='ck_duplicate_not_self'),
        CheckConstraint('confidence_score >= 0 AND confidence_score <= 1', name='ck_confidence_range'),
        Index('ix_duplicate_relationships_duplicate', 'duplicate_result_id'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'original_result_id': self.original_result_id,
            'duplicate_result_id': self.duplicate_result_id,
            'confidence_score': self.confidence_score,
            'reason': self.reason,
            'created_at': _iso(self.created_at),
        }

# =============================================================================
# CACHE MODELS
# =============================================================================

class SearchCache(Base):
    """Database tier of the processed-response cache."""
    __tablename__ = 'search_cache'

    key = Column(String(64), primary_key=True)  # sha256 fingerprint
    data = Column(JSON, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index('ix_search_cache_expires_at', 'expires_at'),
    )

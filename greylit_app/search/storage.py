"""
================================================================================
Greylit - Search Storage
================================================================================
The narrow create/read/update surface the pipeline uses for persisted
shapes. Every method opens its own short session; nothing holds a
connection across pipeline stages.

Status lifecycle of a SearchRequest:

    pending -> processing -> completed
                          -> error
    completed / error -> pending      (explicit retry only)
================================================================================
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..database import get_db_session
from ..errors import PersistenceError, PipelineCancelledError, PipelineError
from ..models import DuplicateRelationship, SearchRequest, SearchResult
from .models import CanonicalResult, SearchParams, SearchStatus

logger = logging.getLogger(__name__)


class SearchStorage:
    """Persistence operations for search requests, results and relationships."""

    # =========================================================================
    # REQUESTS
    # =========================================================================

    def create_request(
        self,
        params: SearchParams,
        owner_id: Optional[str] = None,
        search_title: Optional[str] = None,
        is_saved: bool = False,
    ) -> Dict[str, Any]:
        """Create a pending SearchRequest and return it as a dict."""
        with get_db_session() as session:
            row = SearchRequest(
                owner_id=owner_id,
                query=params.query,
                filters=params.filters(),
                providers=list(params.providers),
                search_title=search_title,
                is_saved=is_saved,
                status=SearchStatus.PENDING.value,
            )
            session.add(row)
            session.flush()
            data = row.to_dict()
        logger.info(f"Created search request {data['id']} for '{params.query}'")
        return data

    def get_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        with get_db_session() as session:
            row = session.get(SearchRequest, request_id)
            return row.to_dict() if row else None

    def delete_request(self, request_id: str) -> bool:
        """Delete a request and (by cascade) its results."""
        with get_db_session() as session:
            row = session.get(SearchRequest, request_id)
            if row is None:
                return False
            session.delete(row)
        return True

    def owns_request(self, request_id: str, owner_id: Optional[str]) -> bool:
        """True if the request still exists and belongs to `owner_id`."""
        with get_db_session() as session:
            row = session.get(SearchRequest, request_id)
            return row is not None and row.owner_id == owner_id

    def begin(self, request_id: str, owner_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Move a request to processing.

        A completed or errored request is first reset to pending (retry).

        Raises:
            PipelineCancelledError: request missing or owned by someone else
            PipelineError: request is already being processed
        """
        with get_db_session() as session:
            row = session.get(SearchRequest, request_id)
            if row is None or row.owner_id != owner_id:
                raise PipelineCancelledError(
                    f"Search request {request_id} not found", reason='request_missing'
                )
            if row.status == SearchStatus.PROCESSING.value:
                raise PipelineError(
                    f"Search request {request_id} is already being processed",
                    reason='in_progress',
                )
            if row.status in (SearchStatus.COMPLETED.value, SearchStatus.ERROR.value):
                logger.info(f"Retrying search request {request_id} (was {row.status})")
                row.status = SearchStatus.PENDING.value
                row.error_message = None
                row.error_at = None
                row.completed_at = None
                session.flush()

            row.status = SearchStatus.PROCESSING.value
            session.flush()
            return row.to_dict()

    def mark_completed(self, request_id: str) -> None:
        self._set_status(request_id, SearchStatus.COMPLETED, completed_at=datetime.now(timezone.utc))

    def mark_error(self, request_id: str, message: str) -> None:
        self._set_status(
            request_id, SearchStatus.ERROR,
            error_message=message[:2000], error_at=datetime.now(timezone.utc),
        )

    def _set_status(self, request_id: str, status: SearchStatus, **fields) -> None:
        try:
            with get_db_session() as session:
                row = session.get(SearchRequest, request_id)
                if row is None:
                    logger.warning(f"Cannot mark {request_id} {status.value}: request no longer exists")
                    return
                row.status = status.value
                for name, value in fields.items():
                    setattr(row, name, value)
        except SQLAlchemyError as e:
            logger.error(f"Failed to mark {request_id} {status.value}: {e}")

    def cleanup_unsaved_requests(self, older_than: timedelta = timedelta(days=7)) -> int:
        """Delete unsaved requests (and their results) older than `older_than`."""
        cutoff = datetime.now(timezone.utc) - older_than
        with get_db_session() as session:
            rows = session.query(SearchRequest).filter(
                SearchRequest.is_saved.is_(False),
                SearchRequest.created_at < cutoff,
            ).all()
            for row in rows:
                session.delete(row)
            count = len(rows)
        if count:
            logger.info(f"Removed {count} unsaved search requests older than {older_than}")
        return count

    # =========================================================================
    # RESULTS
    # =========================================================================

    def save_result(self, request_id: str, result: CanonicalResult, deduped: bool = True) -> str:
        """
        Insert one result row tied to `request_id`.

        Raises:
            PersistenceError: the write failed; nothing was stored
        """
        try:
            with get_db_session() as session:
                row = SearchResult(
                    search_request_id=request_id,
                    provider=result.provider,
                    title=result.title,
                    url=result.url,
                    snippet=result.snippet,
                    rank=result.rank,
                    result_type=result.result_type,
                    search_engine=result.search_engine,
                    total_results=result.total_results,
                    credits_used=result.credits_used,
                    search_id=result.search_id,
                    search_url=result.search_url,
                    related_searches=list(result.related_searches),
                    similar_questions=list(result.similar_questions),
                    raw_response=dict(result.metadata),
                    deduped=deduped,
                )
                session.add(row)
                session.flush()
                return row.id
        except (SQLAlchemyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to save result '{result.url}': {e}") from e

    def save_relationship(
        self,
        original_id: str,
        duplicate_id: str,
        confidence: float,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Record original -> duplicate once.

        Returns:
            True if a row was created, False if the pair already existed

        Raises:
            PersistenceError: invalid pair or write failure
        """
        if original_id == duplicate_id:
            raise PersistenceError("A result cannot duplicate itself")
        if not 0.0 <= confidence <= 1.0:
            raise PersistenceError(f"Confidence {confidence} out of range")

        try:
            with get_db_session() as session:
                exists = session.query(DuplicateRelationship.id).filter_by(
                    original_result_id=original_id,
                    duplicate_result_id=duplicate_id,
                ).first()
                if exists:
                    return False
                session.add(DuplicateRelationship(
                    original_result_id=original_id,
                    duplicate_result_id=duplicate_id,
                    confidence_score=confidence,
                    reason=reason,
                ))
            return True
        except IntegrityError as e:
            # Lost a race with a concurrent writer of the same pair, or a dangling id
            if self._relationship_exists(original_id, duplicate_id):
                logger.debug(f"Relationship {original_id} -> {duplicate_id} already recorded")
                return False
            raise PersistenceError(f"Failed to save relationship: {e}") from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save relationship: {e}") from e

    def _relationship_exists(self, original_id: str, duplicate_id: str) -> bool:
        with get_db_session() as session:
            return session.query(DuplicateRelationship.id).filter_by(
                original_result_id=original_id,
                duplicate_result_id=duplicate_id,
            ).first() is not None

    def get_results(self, request_id: str, include_duplicates: bool = False) -> List[Dict[str, Any]]:
        """Result rows for a request, ordered by rank."""
        with get_db_session() as session:
            query = session.query(SearchResult).filter(SearchResult.search_request_id == request_id)
            if not include_duplicates:
                query = query.filter(SearchResult.deduped.is_(True))
            rows = query.order_by(SearchResult.rank, SearchResult.created_at).all()
            return [row.to_dict() for row in rows]

    def get_relationships(self, result_id: str) -> List[Dict[str, Any]]:
        """Relationships where the result is either side."""
        with get_db_session() as session:
            rows = session.query(DuplicateRelationship).filter(or_(
                DuplicateRelationship.original_result_id == result_id,
                DuplicateRelationship.duplicate_result_id == result_id,
            )).order_by(DuplicateRelationship.created_at).all()
            return [row.to_dict() for row in rows]

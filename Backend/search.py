import logging
import math
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel

from errors import PermissionDenied
from models import AuthContext, Document, Visibility

logger = logging.getLogger(__name__)

SEARCH_FAILED = "Could not search documents"


class DocumentFilter(str, Enum):
    ALL = "all"
    MY_PRIVATE = "my_private"
    PUBLIC = "public"
    SHARED = "shared"
    ADMIN_ALL = "admin_all"


class SearchResult(BaseModel):
    documents: List[Document]
    total_count: int
    total_pages: int
    current_page: int
    error: Optional[str] = None


def page_bounds(page: int, limit: int):
    offset = (page - 1) * limit
    return offset, offset + limit


def total_pages(total_count: int, limit: int) -> int:
    return math.ceil(total_count / limit) if total_count else 0


def merge_partitions(*partitions: List[Document]) -> List[Document]:
    """Union by document id, newest first with id as the tie-break."""
    unique: Dict[str, Document] = {}
    for partition in partitions:
        for document in partition:
            unique.setdefault(document.id, document)
    return sorted(unique.values(), key=lambda d: (d.created_at, d.id), reverse=True)


class DocumentSearchEngine:
    """Builds one page of the documents a viewer may see.

    Read-only. A backend failure yields an empty page carrying an error
    message instead of an exception.
    """

    def __init__(self, repository):
        self.repository = repository

    def search(
        self,
        context: AuthContext,
        filter: DocumentFilter,
        search_term: str = "",
        page: int = 1,
        limit: int = 10,
    ) -> SearchResult:
        if filter == DocumentFilter.ADMIN_ALL and not context.is_admin:
            logger.warning(f"Non-admin user {context.user_id} requested admin_all")
            raise PermissionDenied("Only administrators can list all documents")

        term = (search_term or "").strip()
        try:
            if filter == DocumentFilter.ALL:
                documents, count = self._search_all(context, term, page, limit)
            else:
                documents, count = self._search_partition(context, filter, term, page, limit)
        except Exception as e:
            logger.error(f"Document search failed (filter={filter.value}): {e}")
            return SearchResult(
                documents=[], total_count=0, total_pages=0, current_page=page, error=SEARCH_FAILED
            )

        return SearchResult(
            documents=documents,
            total_count=count,
            total_pages=total_pages(count, limit),
            current_page=page,
        )

    def _search_partition(self, context, filter, term, page, limit):
        offset, _ = page_bounds(page, limit)
        if filter == DocumentFilter.MY_PRIVATE:
            scope = {"owner_id": context.user_id, "visibility": Visibility.PRIVATE}
        elif filter == DocumentFilter.PUBLIC:
            scope = {"visibility": Visibility.PUBLIC}
        elif filter == DocumentFilter.SHARED:
            scope = {"shared_with": context.user_id}
        else:
            scope = {}
        return self.repository.query_documents(offset=offset, limit=limit, name_term=term, **scope)

    def _search_all(self, context, term, page, limit):
        # No single range query covers the union, so fetch every partition and page locally
        mine = self.repository.fetch_all_documents(
            owner_id=context.user_id, visibility=Visibility.PRIVATE, name_term=term
        )
        public = self.repository.fetch_all_documents(visibility=Visibility.PUBLIC, name_term=term)
        shared = self.repository.fetch_all_documents(shared_with=context.user_id, name_term=term)
        visible = merge_partitions(mine, public, shared)
        start, end = page_bounds(page, limit)
        return visible[start:end], len(visible)

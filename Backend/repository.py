"""Supabase-backed access to documents, share edges, profiles and the
authorized-email allowlist.

Queries run with the service-role key, so nothing here relies on row level
security; callers decide what a viewer may see.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from postgrest.exceptions import APIError
from supabase import Client

from errors import AlreadyExists, AlreadyShared
from models import AuthorizedEmail, Document, Profile, ShareEdge, Visibility

logger = logging.getLogger(__name__)

DOCUMENT_COLUMNS = (
    "id, name, file_path, file_size, file_type, visibility, created_at, updated_at, user_id, "
    "profiles!documents_user_id_fkey (email, full_name)"
)
SHARE_COLUMNS = (
    "id, document_id, shared_by_user_id, shared_with_user_id, created_at, "
    "profiles!document_shares_shared_with_user_id_fkey (email, full_name)"
)

SHARED_WITH_EMBED = "document_shares!inner(shared_with_user_id)"

UNIQUE_VIOLATION = "23505"
# Returned when a range starts past the last row
RANGE_NOT_SATISFIABLE = "PGRST103"


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so the term matches literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _fetch_all(build_query: Callable, batch_size: int) -> list:
    rows: list = []
    offset = 0
    while True:
        response = build_query().range(offset, offset + batch_size - 1).execute()
        batch = response.data or []
        rows.extend(batch)
        if len(batch) < batch_size:
            return rows
        offset += batch_size


class DocumentRepository:
    def __init__(self, client: Client, batch_size: int = 1000):
        self.client = client
        self.batch_size = batch_size

    # Documents

    def _document_query(
        self,
        *,
        columns: str = DOCUMENT_COLUMNS,
        owner_id: Optional[str] = None,
        visibility: Optional[Visibility] = None,
        shared_with: Optional[str] = None,
        name_term: str = "",
        count: Optional[str] = None,
    ):
        if shared_with is not None:
            # Inner embed keeps only documents with a share edge to this user
            columns = f"{columns}, {SHARED_WITH_EMBED}"
        query = self.client.table("documents").select(columns, count=count)
        if owner_id is not None:
            query = query.eq("user_id", owner_id)
        if visibility is not None:
            query = query.eq("visibility", visibility.value)
        if shared_with is not None:
            query = query.eq("document_shares.shared_with_user_id", shared_with)
        if name_term:
            query = query.ilike("name", f"%{escape_like(name_term)}%")
        # id breaks created_at ties so pages never overlap
        return query.order("created_at", desc=True).order("id", desc=True)

    def query_documents(
        self,
        *,
        offset: int,
        limit: int,
        owner_id: Optional[str] = None,
        visibility: Optional[Visibility] = None,
        shared_with: Optional[str] = None,
        name_term: str = "",
    ) -> Tuple[List[Document], int]:
        """One page of matching documents plus the exact count of all matches.

        An offset past the last match yields an empty page, still carrying
        the count.
        """
        scope = {
            "owner_id": owner_id,
            "visibility": visibility,
            "shared_with": shared_with,
            "name_term": name_term,
        }
        try:
            response = (
                self._document_query(count="exact", **scope)
                .range(offset, offset + limit - 1)
                .execute()
            )
        except APIError as e:
            if e.code != RANGE_NOT_SATISFIABLE:
                raise
            response = self._document_query(columns="id", count="exact", **scope).limit(1).execute()
            return [], response.count or 0
        documents = [Document(**row) for row in response.data or []]
        return documents, response.count or 0

    def fetch_all_documents(
        self,
        *,
        owner_id: Optional[str] = None,
        visibility: Optional[Visibility] = None,
        shared_with: Optional[str] = None,
        name_term: str = "",
    ) -> List[Document]:
        rows = _fetch_all(
            lambda: self._document_query(
                owner_id=owner_id, visibility=visibility, shared_with=shared_with, name_term=name_term
            ),
            self.batch_size,
        )
        return [Document(**row) for row in rows]

    def get_document(self, document_id: str) -> Optional[Document]:
        response = (
            self.client.table("documents")
            .select(DOCUMENT_COLUMNS)
            .eq("id", document_id)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        return Document(**response.data[0])

    def insert_document(
        self,
        *,
        user_id: str,
        name: str,
        file_path: str,
        file_size: int,
        file_type: str,
        visibility: Visibility,
    ) -> Document:
        response = self.client.table("documents").insert({
            "user_id": user_id,
            "name": name,
            "file_path": file_path,
            "file_size": file_size,
            "file_type": file_type,
            "visibility": visibility.value,
        }).execute()
        if not response.data:
            raise RuntimeError("Failed to save document metadata")
        return Document(**response.data[0])

    def delete_document(self, document_id: str) -> None:
        self.client.table("documents").delete().eq("id", document_id).execute()

    def enqueue_reconciliation(self, document: Document, reason: str) -> None:
        """Remember a metadata row whose storage object is already gone."""
        self.client.table("document_reconciliation").insert({
            "document_id": document.id,
            "file_path": document.file_path,
            "reason": reason,
            "created_at": datetime.utcnow().isoformat(),
        }).execute()

    # Share edges

    def has_share(self, document_id: str, user_id: str) -> bool:
        response = (
            self.client.table("document_shares")
            .select("id")
            .eq("document_id", document_id)
            .eq("shared_with_user_id", user_id)
            .limit(1)
            .execute()
        )
        return bool(response.data)

    def list_shares(self, document_id: str) -> List[ShareEdge]:
        response = (
            self.client.table("document_shares")
            .select(SHARE_COLUMNS)
            .eq("document_id", document_id)
            .order("created_at", desc=True)
            .execute()
        )
        return [ShareEdge(**row) for row in response.data or []]

    def insert_share(self, document_id: str, shared_by: str, shared_with: str) -> None:
        try:
            self.client.table("document_shares").insert({
                "document_id": document_id,
                "shared_by_user_id": shared_by,
                "shared_with_user_id": shared_with,
            }).execute()
        except APIError as e:
            # Lost a race against another insert of the same pair
            if e.code == UNIQUE_VIOLATION:
                raise AlreadyShared()
            raise

    def delete_share(self, document_id: str, user_id: str) -> None:
        (
            self.client.table("document_shares")
            .delete()
            .eq("document_id", document_id)
            .eq("shared_with_user_id", user_id)
            .execute()
        )

    # Profiles

    def get_profile(self, user_id: str) -> Optional[Profile]:
        response = self.client.table("profiles").select("*").eq("id", user_id).limit(1).execute()
        if not response.data:
            return None
        return Profile(**response.data[0])

    def find_profile_by_email(self, email: str) -> Optional[Profile]:
        response = (
            self.client.table("profiles")
            .select("*")
            .ilike("email", escape_like(email.strip()))
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        return Profile(**response.data[0])


class AuthorizedEmailRepository:
    def __init__(self, client: Client):
        self.client = client

    def list_all(self) -> List[AuthorizedEmail]:
        response = (
            self.client.table("authorized_emails")
            .select("*")
            .order("created_at", desc=True)
            .execute()
        )
        return [AuthorizedEmail(**row) for row in response.data or []]

    def add(self, email: str, added_by: str) -> AuthorizedEmail:
        try:
            response = self.client.table("authorized_emails").insert({
                "email": email.strip().lower(),
                "added_by": added_by,
            }).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise AlreadyExists()
            raise
        if not response.data:
            raise RuntimeError("Failed to save authorized email")
        return AuthorizedEmail(**response.data[0])

    def remove(self, entry_id: str) -> None:
        self.client.table("authorized_emails").delete().eq("id", entry_id).execute()

    def is_authorized(self, email: str) -> bool:
        """Case-insensitive allowlist lookup; a backend error counts as not authorized."""
        try:
            response = (
                self.client.table("authorized_emails")
                .select("id")
                .ilike("email", escape_like(email.strip()))
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error checking email authorization: {e}")
            return False
        return bool(response.data)

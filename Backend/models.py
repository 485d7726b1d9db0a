from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class Row(BaseModel):
    # Supabase returns extra embedded columns we do not model
    model_config = ConfigDict(extra="ignore")


class OwnerSummary(Row):
    email: str
    full_name: Optional[str] = None


class Document(Row):
    id: str
    name: str
    file_path: str
    file_size: int
    file_type: str
    visibility: Visibility
    user_id: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    profiles: Optional[OwnerSummary] = None

    @property
    def is_private(self) -> bool:
        return self.visibility == Visibility.PRIVATE


class ShareEdge(Row):
    id: str
    document_id: str
    shared_by_user_id: str
    shared_with_user_id: str
    created_at: Optional[datetime] = None
    profiles: Optional[OwnerSummary] = None


class Profile(Row):
    id: str
    email: str
    full_name: Optional[str] = None
    role: Role = Role.USER
    created_at: Optional[datetime] = None


class AuthorizedEmail(Row):
    id: str
    email: str
    added_by: Optional[str] = None
    created_at: Optional[datetime] = None


class AuthContext(BaseModel):
    """Who is calling, resolved once per request."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def can_view(self, document: Document, shared_with_me: bool = False) -> bool:
        if self.is_admin or document.user_id == self.user_id:
            return True
        return document.visibility == Visibility.PUBLIC or shared_with_me

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models import OwnerSummary, Role, Visibility

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Accounts

class SignUpIn(BaseModel):
    email: str = Field(..., pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=6)
    full_name: Optional[str] = None
    access_code: Optional[str] = None

class ResetPasswordIn(BaseModel):
    email: str = Field(..., pattern=EMAIL_PATTERN)

class MessageOut(BaseModel):
    message: str

class Token(BaseModel):
    access_token: str
    token_type: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None

class MeOut(BaseModel):
    id: str
    email: Optional[str] = None
    role: Role
    is_admin: bool


# Documents

class DocumentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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

class SearchOut(CamelModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    documents: List[DocumentOut]
    total_count: int
    total_pages: int
    current_page: int
    error: Optional[str] = None

class DownloadLinkOut(BaseModel):
    url: str
    expires_in: int

class ShareIn(BaseModel):
    email: str

class ShareOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    document_id: str
    shared_with_user_id: str
    created_at: Optional[datetime] = None
    profiles: Optional[OwnerSummary] = None


# Validation endpoints

class UploadValidationIn(CamelModel):
    # Optional so missing fields get the endpoint's own 400 body
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    file_type: Optional[str] = None

class UploadValidationOut(CamelModel):
    valid: bool
    sanitized_file_name: Optional[str] = None
    error: Optional[str] = None

class AuthRateLimitIn(BaseModel):
    action: Optional[str] = None
    email: Optional[str] = None

class AuthRateLimitOut(BaseModel):
    allowed: bool
    error: Optional[str] = None


# Administration

class AuthorizedEmailIn(BaseModel):
    email: str = Field(..., pattern=EMAIL_PATTERN)

class AuthorizedEmailOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    added_by: Optional[str] = None
    created_at: Optional[datetime] = None

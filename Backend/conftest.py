import os

# Set dummy environment variables before any application module is imported
os.environ["SUPABASE_URL"] = "https://example.supabase.co"
os.environ["SUPABASE_KEY"] = "dummy.service.key"
os.environ["SUPABASE_JWT_SECRET"] = "dummy_jwt_secret"

import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from actions import DocumentActions
from errors import AlreadyShared, StorageObjectMissing
from models import AuthContext, Document, Profile, Role, ShareEdge, Visibility
from rate_limit import RateLimiter
from search import DocumentSearchEngine
from validation import UploadValidator

BASE_TIME = datetime(2026, 1, 1, 12, 0, 0)

PDF_BYTES = b"%PDF-1.4 " + b"0" * 4096


class InMemoryRepository:
    """Stand-in for DocumentRepository with the same filtering and ordering."""

    def __init__(self):
        self.documents = {}
        self.shares = []
        self.profiles = {}
        self.reconciliation = []
        self.fail = False
        self.fail_delete = False

    def _check(self):
        if self.fail:
            raise RuntimeError("database unavailable")

    # Test helpers

    def add_profile(self, user_id, email, role=Role.USER):
        self.profiles[user_id] = Profile(id=user_id, email=email, role=role)

    def add_document(self, name, owner, visibility=Visibility.PRIVATE, minutes=0, doc_id=None, file_size=2048):
        document = Document(
            id=doc_id or str(uuid.uuid4()),
            name=name,
            file_path=f"{owner}/{name}",
            file_size=file_size,
            file_type="application/pdf",
            visibility=visibility,
            user_id=owner,
            created_at=BASE_TIME + timedelta(minutes=minutes),
        )
        self.documents[document.id] = document
        return document

    def add_share(self, document_id, shared_by, shared_with):
        self.shares.append(ShareEdge(
            id=str(uuid.uuid4()),
            document_id=document_id,
            shared_by_user_id=shared_by,
            shared_with_user_id=shared_with,
            created_at=BASE_TIME,
        ))

    # DocumentRepository interface

    def _matching(self, owner_id=None, visibility=None, shared_with=None, name_term=""):
        self._check()
        rows = []
        for document in self.documents.values():
            if owner_id is not None and document.user_id != owner_id:
                continue
            if visibility is not None and document.visibility != visibility:
                continue
            if shared_with is not None and not self.has_share(document.id, shared_with):
                continue
            if name_term and name_term.lower() not in document.name.lower():
                continue
            rows.append(document)
        return sorted(rows, key=lambda d: (d.created_at, d.id), reverse=True)

    def query_documents(self, *, offset, limit, **filters):
        rows = self._matching(**filters)
        return rows[offset:offset + limit], len(rows)

    def fetch_all_documents(self, **filters):
        return self._matching(**filters)

    def get_document(self, document_id):
        self._check()
        return self.documents.get(document_id)

    def insert_document(self, *, user_id, name, file_path, file_size, file_type, visibility):
        self._check()
        document = Document(
            id=str(uuid.uuid4()),
            name=name,
            file_path=file_path,
            file_size=file_size,
            file_type=file_type,
            visibility=visibility,
            user_id=user_id,
            created_at=datetime.utcnow(),
        )
        self.documents[document.id] = document
        return document

    def delete_document(self, document_id):
        if self.fail_delete:
            raise RuntimeError("delete failed")
        self.documents.pop(document_id, None)
        self.shares = [s for s in self.shares if s.document_id != document_id]

    def enqueue_reconciliation(self, document, reason):
        self.reconciliation.append((document.id, reason))

    def has_share(self, document_id, user_id):
        return any(
            s.document_id == document_id and s.shared_with_user_id == user_id for s in self.shares
        )

    def list_shares(self, document_id):
        return [s for s in self.shares if s.document_id == document_id]

    def insert_share(self, document_id, shared_by, shared_with):
        if self.has_share(document_id, shared_with):
            raise AlreadyShared()
        self.add_share(document_id, shared_by, shared_with)

    def delete_share(self, document_id, user_id):
        self.shares = [
            s for s in self.shares
            if not (s.document_id == document_id and s.shared_with_user_id == user_id)
        ]

    def get_profile(self, user_id):
        return self.profiles.get(user_id)

    def find_profile_by_email(self, email):
        for profile in self.profiles.values():
            if profile.email.lower() == email.strip().lower():
                return profile
        return None


class FakeStorage:
    def __init__(self):
        self.objects = {}
        self.fail_remove = False

    def exists(self, path):
        return path in self.objects

    def signed_url(self, path):
        return f"https://example.supabase.co/storage/v1/object/sign/documents/{path}?token=t"

    def fetch(self, path):
        if path not in self.objects:
            raise StorageObjectMissing()
        return self.objects[path]

    def upload(self, path, content, content_type):
        self.objects[path] = content

    def remove(self, path):
        if self.fail_remove:
            raise RuntimeError("storage unavailable")
        self.objects.pop(path, None)


class FakeCounterStore:
    """Counts attempts per key, the way check_rate_limit does."""

    def __init__(self):
        self.counts = defaultdict(int)
        self.fail = False

    def hit(self, action_type, *, max_attempts, window_minutes, user_id=None, ip_address=None, identifier=None):
        if self.fail:
            raise RuntimeError("counter backend down")
        key = (action_type, user_id, ip_address, identifier)
        self.counts[key] += 1
        return self.counts[key] <= max_attempts


@pytest.fixture
def repo():
    repository = InMemoryRepository()
    repository.add_profile("user-a", "alice@example.com")
    repository.add_profile("user-b", "bob@example.com")
    repository.add_profile("admin-1", "admin@example.com", role=Role.ADMIN)
    return repository


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def audit():
    return MagicMock()


@pytest.fixture
def counter_store():
    return FakeCounterStore()


@pytest.fixture
def validator(counter_store, audit):
    return UploadValidator(
        RateLimiter(counter_store),
        audit,
        min_bytes=1024,
        max_bytes=50 * 1024 * 1024,
        max_attempts=10,
        window_minutes=15,
    )


@pytest.fixture
def actions(repo, storage, audit, validator):
    return DocumentActions(repo, storage, audit, validator)


@pytest.fixture
def engine(repo):
    return DocumentSearchEngine(repo)


@pytest.fixture
def alice():
    return AuthContext(user_id="user-a", email="alice@example.com")


@pytest.fixture
def bob():
    return AuthContext(user_id="user-b", email="bob@example.com")


@pytest.fixture
def admin():
    return AuthContext(user_id="admin-1", email="admin@example.com", role=Role.ADMIN)

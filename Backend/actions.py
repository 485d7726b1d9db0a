import logging
import time
from typing import List, Optional, Tuple

from audit import AuditLogger
from errors import (
    AlreadyShared, ConfirmationRequired, DocumentServiceError, InvalidRequest,
    NotFound, PermissionDenied, StorageUnavailable,
)
from models import AuthContext, Document, ShareEdge, Visibility
from storage import DocumentStorage
from validation import UploadValidator

logger = logging.getLogger(__name__)


class DocumentActions:
    """Upload, download, delete and sharing, each checked against the caller."""

    def __init__(self, repository, storage: DocumentStorage, audit: AuditLogger, validator: UploadValidator):
        self.repository = repository
        self.storage = storage
        self.audit = audit
        self.validator = validator

    def _load_visible(self, context: AuthContext, document_id: str) -> Document:
        document = self.repository.get_document(document_id)
        if document is None:
            raise NotFound()
        shared = False
        if not context.can_view(document):
            shared = self.repository.has_share(document.id, context.user_id)
        # Invisible documents are reported as missing so their existence does not leak
        if not context.can_view(document, shared_with_me=shared):
            raise NotFound()
        return document

    def _load_managed(self, context: AuthContext, document_id: str) -> Document:
        document = self._load_visible(context, document_id)
        if document.user_id != context.user_id and not context.is_admin:
            raise PermissionDenied()
        return document

    def upload(
        self,
        context: AuthContext,
        file_name: str,
        content: bytes,
        content_type: str,
        visibility: Visibility = Visibility.PRIVATE,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Document:
        sanitized = self.validator.validate(
            context, file_name, len(content), content_type, ip_address, user_agent
        )
        extension = sanitized.rsplit(".", 1)[1] if "." in sanitized else "bin"
        file_path = f"{context.user_id}/{int(time.time() * 1000)}.{extension}"

        try:
            self.storage.upload(file_path, content, content_type)
        except Exception as e:
            logger.error(f"Storage upload failed for {file_path}: {e}")
            raise StorageUnavailable("Could not store the file")

        try:
            document = self.repository.insert_document(
                user_id=context.user_id,
                name=file_name,
                file_path=file_path,
                file_size=len(content),
                file_type=content_type,
                visibility=visibility,
            )
        except Exception as e:
            logger.error(f"Database error during document upload: {e}")
            # Clean up the object if the metadata insert fails
            try:
                self.storage.remove(file_path)
            except Exception as cleanup_error:
                logger.error(f"Could not remove orphaned object {file_path}: {cleanup_error}")
            raise DocumentServiceError()

        self.audit.record("document_upload", user_id=context.user_id, resource_id=document.id, details={
            "fileName": document.name, "fileSize": document.file_size, "visibility": document.visibility.value,
        })
        logger.info(f"User {context.user_id} uploaded document {document.id}")
        return document

    def download(self, context: AuthContext, document_id: str) -> Tuple[Document, bytes]:
        document = self._load_visible(context, document_id)
        content = self.storage.fetch(document.file_path)
        self.audit.record("document_download", user_id=context.user_id, resource_id=document.id, details={
            "documentId": document.id, "fileName": document.name, "fileSize": document.file_size,
        })
        return document, content

    def download_link(self, context: AuthContext, document_id: str) -> Tuple[Document, str]:
        document = self._load_visible(context, document_id)
        if not self.storage.exists(document.file_path):
            raise NotFound("File not found in storage")
        return document, self.storage.signed_url(document.file_path)

    def delete(self, context: AuthContext, document_id: str, confirmed: bool = False) -> Document:
        document = self._load_visible(context, document_id)
        via_admin = document.user_id != context.user_id
        if via_admin and not context.is_admin:
            logger.warning(f"User {context.user_id} tried to delete document {document.id}")
            raise PermissionDenied("You do not have permission to delete this document")
        if not confirmed:
            raise ConfirmationRequired()

        # Storage first: a failure here leaves both the object and its record intact
        try:
            self.storage.remove(document.file_path)
        except Exception as e:
            logger.error(f"Storage removal failed for document {document.id}: {e}")
            raise StorageUnavailable("Could not remove the file from storage; the document was not deleted")

        try:
            self.repository.delete_document(document.id)
        except Exception as e:
            logger.error(f"Metadata delete failed for document {document.id} after storage removal: {e}")
            try:
                self.repository.enqueue_reconciliation(document, reason=str(e))
            except Exception as queue_error:
                logger.critical(f"Could not queue reconciliation for document {document.id}: {queue_error}")
            raise DocumentServiceError("The file was removed but its record could not be deleted; it was queued for cleanup")

        self.audit.record("document_delete", user_id=context.user_id, resource_id=document.id, details={
            "documentId": document.id,
            "fileName": document.name,
            "deletedBy": context.user_id,
            "viaAdmin": via_admin,
        })
        logger.info(f"User {context.user_id} deleted document {document.id} (via_admin={via_admin})")
        return document

    def share(self, context: AuthContext, document_id: str, email: str) -> List[ShareEdge]:
        document = self._load_visible(context, document_id)
        if document.user_id != context.user_id:
            raise PermissionDenied("Only the owner can share this document")
        if not document.is_private:
            raise InvalidRequest("Only private documents can be shared")
        email = (email or "").strip()
        if not email:
            raise InvalidRequest("Email is required")

        target = self.repository.find_profile_by_email(email)
        if target is None:
            raise NotFound("No user found with this email")
        if target.id == context.user_id:
            raise InvalidRequest("You cannot share a document with yourself")
        if self.repository.has_share(document.id, target.id):
            raise AlreadyShared()

        self.repository.insert_share(document.id, context.user_id, target.id)
        self.audit.record("document_share", user_id=context.user_id, resource_id=document.id, details={
            "documentId": document.id, "sharedWith": target.id,
        })
        logger.info(f"User {context.user_id} shared document {document.id} with {target.id}")
        return self.repository.list_shares(document.id)

    def list_shares(self, context: AuthContext, document_id: str) -> List[ShareEdge]:
        document = self._load_managed(context, document_id)
        return self.repository.list_shares(document.id)

    def unshare(self, context: AuthContext, document_id: str, user_id: str) -> None:
        document = self._load_managed(context, document_id)
        self.repository.delete_share(document.id, user_id)
        self.audit.record("document_unshare", user_id=context.user_id, resource_id=document.id, details={
            "documentId": document.id, "sharedWith": user_id,
        })

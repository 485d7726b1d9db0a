"""Domain errors raised by the service layer.

Each carries the HTTP status and the user-facing message; main.py turns them
into JSON responses.
"""


class DocumentServiceError(Exception):
    status_code = 500
    default_message = "Internal Server Error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidRequest(DocumentServiceError):
    status_code = 400
    default_message = "Invalid request"


class ConfirmationRequired(InvalidRequest):
    default_message = "Deletion must be confirmed with confirm=true"


class PermissionDenied(DocumentServiceError):
    status_code = 403
    default_message = "You do not have permission to perform this action"


class SignupNotAllowed(PermissionDenied):
    default_message = "Signup is not allowed for this account"


class NotFound(DocumentServiceError):
    status_code = 404
    default_message = "Document not found"


class AlreadyShared(DocumentServiceError):
    status_code = 409
    default_message = "This document is already shared with this user"


class AlreadyExists(DocumentServiceError):
    status_code = 409
    default_message = "This email is already authorized"


class RateLimited(DocumentServiceError):
    status_code = 429
    default_message = "Too many attempts. Try again in a few minutes."


class StorageObjectMissing(NotFound):
    default_message = "File not found in storage"


class StorageUnavailable(DocumentServiceError):
    status_code = 502
    default_message = "Could not reach document storage"


class EmptyDownload(DocumentServiceError):
    status_code = 502
    default_message = "The file is empty or could not be downloaded"

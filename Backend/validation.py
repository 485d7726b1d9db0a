import logging
import re
import time
from typing import Optional

from audit import AuditLogger
from errors import InvalidRequest, RateLimited
from models import AuthContext
from rate_limit import RateLimiter

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = frozenset({
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "text/plain",
    "text/csv",
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
})

DANGEROUS_EXTENSIONS = (
    ".exe", ".bat", ".cmd", ".com", ".pif", ".scr", ".vbs", ".js", ".jar",
    ".app", ".deb", ".pkg", ".dmg", ".run", ".sh", ".ps1", ".msi",
)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
_REPEATED_UNDERSCORES = re.compile(r"_+")


def sanitize_file_name(file_name: str) -> str:
    """Keep letters, digits, dots, hyphens and underscores only."""
    sanitized = _UNSAFE_CHARS.sub("_", file_name)
    sanitized = _REPEATED_UNDERSCORES.sub("_", sanitized)
    sanitized = sanitized.strip("_")
    if not sanitized:
        sanitized = f"file_{int(time.time() * 1000)}"
    return sanitized


def has_dangerous_extension(file_name: str) -> bool:
    # Windows drops trailing dots and spaces, so "virus.exe." is still an .exe
    name = file_name.lower().rstrip(" .")
    return name.endswith(DANGEROUS_EXTENSIONS)


def check_file_type(file_name: str, mime_type: str) -> Optional[str]:
    if has_dangerous_extension(file_name):
        return "File type not allowed for security reasons"
    if mime_type not in ALLOWED_MIME_TYPES:
        return f"Unsupported file type: {mime_type}"
    return None


def check_file_size(size: int, min_bytes: int, max_bytes: int) -> Optional[str]:
    if size > max_bytes:
        return f"File too large. Maximum size: {round(max_bytes / 1024 / 1024)}MB"
    if size < min_bytes:
        return f"File too small. Minimum size: {round(min_bytes / 1024)}KB"
    return None


class UploadValidator:
    """Server-side gate every upload passes before touching storage."""

    def __init__(
        self,
        limiter: RateLimiter,
        audit: AuditLogger,
        *,
        min_bytes: int,
        max_bytes: int,
        max_attempts: int,
        window_minutes: int,
    ):
        self.limiter = limiter
        self.audit = audit
        self.min_bytes = min_bytes
        self.max_bytes = max_bytes
        self.max_attempts = max_attempts
        self.window_minutes = window_minutes

    def validate(
        self,
        context: AuthContext,
        file_name: Optional[str],
        file_size: Optional[int],
        file_type: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Return the sanitized file name or raise RateLimited / InvalidRequest."""

        def audit(action_type, details):
            self.audit.record(
                action_type,
                user_id=context.user_id,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
            )

        if not self.limiter.check(
            "upload",
            self.max_attempts,
            self.window_minutes,
            user_id=context.user_id,
            ip_address=ip_address,
        ):
            logger.warning(f"Upload rate limit exceeded for user {context.user_id} from {ip_address}")
            audit("upload_rate_limit_exceeded", {"ip": ip_address})
            raise RateLimited("Too many upload attempts. Try again in a few minutes.")

        if not file_name or not file_type or not file_size or file_size < 0:
            error = "Required file data was not provided"
            audit("upload_validation_failed", {
                "fileName": file_name, "fileSize": file_size, "fileType": file_type, "error": error,
            })
            raise InvalidRequest(error)

        sanitized = sanitize_file_name(file_name)

        error = check_file_type(file_name, file_type)
        if error:
            audit("upload_validation_failed", {"fileName": file_name, "fileType": file_type, "error": error})
            raise InvalidRequest(error)

        error = check_file_size(file_size, self.min_bytes, self.max_bytes)
        if error:
            audit("upload_validation_failed", {"fileName": file_name, "fileSize": file_size, "error": error})
            raise InvalidRequest(error)

        audit("upload_validation_success", {"fileName": sanitized, "fileSize": file_size, "fileType": file_type})
        return sanitized

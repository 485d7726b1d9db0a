import logging
from contextlib import asynccontextmanager
from typing import List
from urllib.parse import quote

from fastapi import FastAPI, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import OAuth2PasswordRequestForm
from supabase import Client

from actions import DocumentActions
from audit import AuditLogger
from auth import SignupGate, build_auth_context, oauth2_scheme
from config import settings
from db import create_auth_client, get_supabase
from errors import DocumentServiceError, InvalidRequest, PermissionDenied
from models import AuthContext, Visibility
from rate_limit import AuthRateLimiter, RateLimiter, SupabaseCounterStore
from repository import AuthorizedEmailRepository, DocumentRepository
from schemas import (
    AuthRateLimitIn, AuthRateLimitOut, AuthorizedEmailIn, AuthorizedEmailOut, DocumentOut,
    DownloadLinkOut, MeOut, MessageOut, ResetPasswordIn, SearchOut, ShareIn, ShareOut,
    SignUpIn, Token, UploadValidationIn, UploadValidationOut,
)
from search import DocumentFilter, DocumentSearchEngine
from storage import DocumentStorage
from validation import UploadValidator, sanitize_file_name

# Logging Setup
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

RESET_PASSWORD_MESSAGE = "If the email is registered, you will receive instructions to reset your password."


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI.
    Handles startup and shutdown events.
    """
    logger.info("Application startup: Initializing resources...")
    logger.info(f"Storage bucket: {settings.storage_bucket}, signup gate: {settings.signup_gate}")

    try:
        # Supabase Health Check: a lightweight query against a table every deployment has.
        logger.info("Verifying Supabase connection...")
        get_supabase().table("profiles").select("id").limit(1).execute()
        logger.info("Supabase connection verified.")
    except Exception as e:
        logger.critical(f"CRITICAL: Supabase connection failed. Error: {e}")
        # Refuse to start in a broken state.
        raise

    logger.info("Application startup complete.")
    yield
    logger.info("Application shutdown: Cleaning up resources...")

app = FastAPI(
    title="Document Sharing",
    lifespan=lifespan,
    version="1.0.0"
)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DocumentServiceError)
async def document_service_error_handler(request: Request, exc: DocumentServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Dependencies

def get_repository(client: Client = Depends(get_supabase)) -> DocumentRepository:
    return DocumentRepository(client, batch_size=settings.fetch_batch_size)

def get_authorized_emails(client: Client = Depends(get_supabase)) -> AuthorizedEmailRepository:
    return AuthorizedEmailRepository(client)

def get_audit(client: Client = Depends(get_supabase)) -> AuditLogger:
    return AuditLogger(client)

def get_rate_limiter(client: Client = Depends(get_supabase)) -> RateLimiter:
    return RateLimiter(SupabaseCounterStore(client), fail_open=settings.rate_limit_fail_open)

def get_auth_rate_limiter(
    limiter: RateLimiter = Depends(get_rate_limiter),
    audit: AuditLogger = Depends(get_audit),
) -> AuthRateLimiter:
    return AuthRateLimiter(limiter, audit)

def get_upload_validator(
    limiter: RateLimiter = Depends(get_rate_limiter),
    audit: AuditLogger = Depends(get_audit),
) -> UploadValidator:
    return UploadValidator(
        limiter,
        audit,
        min_bytes=settings.upload_min_bytes,
        max_bytes=settings.upload_max_bytes,
        max_attempts=settings.upload_rate_limit_attempts,
        window_minutes=settings.upload_rate_limit_window_minutes,
    )

def get_storage(client: Client = Depends(get_supabase)) -> DocumentStorage:
    return DocumentStorage(
        client,
        settings.storage_bucket,
        signed_url_ttl_seconds=settings.signed_url_ttl_seconds,
        timeout=settings.http_timeout_seconds,
    )

def get_search_engine(repository: DocumentRepository = Depends(get_repository)) -> DocumentSearchEngine:
    return DocumentSearchEngine(repository)

def get_actions(
    repository: DocumentRepository = Depends(get_repository),
    storage: DocumentStorage = Depends(get_storage),
    audit: AuditLogger = Depends(get_audit),
    validator: UploadValidator = Depends(get_upload_validator),
) -> DocumentActions:
    return DocumentActions(repository, storage, audit, validator)

def get_signup_gate(
    authorized_emails: AuthorizedEmailRepository = Depends(get_authorized_emails),
) -> SignupGate:
    return SignupGate(settings.signup_gate, authorized_emails, settings.signup_access_code_hash)

async def get_current_user(
    token: str = Depends(oauth2_scheme),
    repository: DocumentRepository = Depends(get_repository),
) -> AuthContext:
    return build_auth_context(token, repository)

async def get_current_admin(current_user: AuthContext = Depends(get_current_user)) -> AuthContext:
    if not current_user.is_admin:
        raise PermissionDenied("Administrator role required")
    return current_user


def content_disposition(file_name: str) -> str:
    """Attachment header with an ASCII fallback and the RFC 5987 UTF-8 name."""
    fallback = sanitize_file_name(file_name)
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(file_name)}"


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


# Auth Endpoints

@app.post("/api/auth/signup", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
def signup(
    user_in: SignUpIn,
    request: Request,
    gate: SignupGate = Depends(get_signup_gate),
    auth_limiter: AuthRateLimiter = Depends(get_auth_rate_limiter),
):
    # Count the attempt before the gate so rejected signups are limited too
    auth_limiter.enforce("signup", user_in.email, client_ip(request), request.headers.get("user-agent"))
    gate.check(user_in.email, user_in.access_code)

    options = {"data": {"full_name": user_in.full_name}}
    if settings.email_redirect_url:
        options["email_redirect_to"] = settings.email_redirect_url
    try:
        create_auth_client().auth.sign_up({
            "email": user_in.email,
            "password": user_in.password,
            "options": options,
        })
    except Exception as e:
        logger.error(f"Signup failed: {e}")
        raise HTTPException(status_code=400, detail="Could not complete registration")

    return {"message": "Registration complete. Check your email to confirm your account."}

@app.post("/api/auth/login", response_model=Token)
def login(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    auth_limiter: AuthRateLimiter = Depends(get_auth_rate_limiter),
):
    # username field contains the email
    email = form_data.username
    auth_limiter.enforce("login", email, client_ip(request), request.headers.get("user-agent"))

    try:
        response = create_auth_client().auth.sign_in_with_password({
            "email": email,
            "password": form_data.password,
        })
        session = response.session
    except Exception as e:
        logger.warning(f"Failed login attempt from {client_ip(request)}: {e}")
        session = None

    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return {
        "access_token": session.access_token,
        "token_type": "bearer",
        "refresh_token": session.refresh_token,
        "expires_in": session.expires_in,
    }

@app.post("/api/auth/reset-password", response_model=MessageOut)
def reset_password(
    body: ResetPasswordIn,
    request: Request,
    auth_limiter: AuthRateLimiter = Depends(get_auth_rate_limiter),
):
    auth_limiter.enforce("reset_password", body.email, client_ip(request), request.headers.get("user-agent"))
    options = {}
    if settings.password_reset_redirect_url:
        options["redirect_to"] = settings.password_reset_redirect_url
    try:
        create_auth_client().auth.reset_password_for_email(body.email, options)
    except Exception as e:
        # Same answer either way so callers cannot tell which emails exist
        logger.error(f"Password reset request failed: {e}")
    return {"message": RESET_PASSWORD_MESSAGE}

@app.get("/api/me", response_model=MeOut)
def me(current_user: AuthContext = Depends(get_current_user)):
    return {
        "id": current_user.user_id,
        "email": current_user.email,
        "role": current_user.role,
        "is_admin": current_user.is_admin,
    }


# Document Endpoints

@app.get("/api/documents", response_model=SearchOut)
def list_documents(
    filter: DocumentFilter = Query(DocumentFilter.ALL),
    search: str = Query(""),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.search_default_limit, ge=1, le=settings.search_max_limit),
    current_user: AuthContext = Depends(get_current_user),
    engine: DocumentSearchEngine = Depends(get_search_engine),
):
    return engine.search(current_user, filter, search, page, limit)

@app.post("/api/documents", response_model=DocumentOut, status_code=status.HTTP_201_CREATED)
async def upload_document(
    request: Request,
    file: UploadFile = File(...),
    visibility: Visibility = Form(Visibility.PRIVATE),
    current_user: AuthContext = Depends(get_current_user),
    actions: DocumentActions = Depends(get_actions),
):
    content = await file.read()
    return actions.upload(
        current_user,
        file.filename or "",
        content,
        file.content_type or "",
        visibility,
        client_ip(request),
        request.headers.get("user-agent"),
    )

@app.get("/api/documents/{doc_id}/download")
def download_document(
    doc_id: str,
    current_user: AuthContext = Depends(get_current_user),
    actions: DocumentActions = Depends(get_actions),
):
    document, content = actions.download(current_user, doc_id)
    return StreamingResponse(
        iter([content]),
        media_type=document.file_type or "application/octet-stream",
        headers={"Content-Disposition": content_disposition(document.name)}
    )

@app.post("/api/documents/{doc_id}/link", response_model=DownloadLinkOut)
def request_download_link(
    doc_id: str,
    current_user: AuthContext = Depends(get_current_user),
    actions: DocumentActions = Depends(get_actions),
):
    _, url = actions.download_link(current_user, doc_id)
    return {"url": url, "expires_in": settings.signed_url_ttl_seconds}

@app.delete("/api/documents/{doc_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_document(
    doc_id: str,
    confirm: bool = Query(False),
    current_user: AuthContext = Depends(get_current_user),
    actions: DocumentActions = Depends(get_actions),
):
    actions.delete(current_user, doc_id, confirmed=confirm)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

@app.get("/api/documents/{doc_id}/shares", response_model=List[ShareOut])
def list_shares(
    doc_id: str,
    current_user: AuthContext = Depends(get_current_user),
    actions: DocumentActions = Depends(get_actions),
):
    return actions.list_shares(current_user, doc_id)

@app.post("/api/documents/{doc_id}/shares", response_model=List[ShareOut], status_code=status.HTTP_201_CREATED)
def share_document(
    doc_id: str,
    body: ShareIn,
    current_user: AuthContext = Depends(get_current_user),
    actions: DocumentActions = Depends(get_actions),
):
    return actions.share(current_user, doc_id, body.email)

@app.delete("/api/documents/{doc_id}/shares/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def unshare_document(
    doc_id: str,
    user_id: str,
    current_user: AuthContext = Depends(get_current_user),
    actions: DocumentActions = Depends(get_actions),
):
    actions.unshare(current_user, doc_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Admin Endpoints

@app.get("/api/admin/authorized-emails", response_model=List[AuthorizedEmailOut])
def list_authorized_emails(
    admin: AuthContext = Depends(get_current_admin),
    authorized_emails: AuthorizedEmailRepository = Depends(get_authorized_emails),
):
    return authorized_emails.list_all()

@app.post("/api/admin/authorized-emails", response_model=AuthorizedEmailOut, status_code=status.HTTP_201_CREATED)
def add_authorized_email(
    body: AuthorizedEmailIn,
    admin: AuthContext = Depends(get_current_admin),
    authorized_emails: AuthorizedEmailRepository = Depends(get_authorized_emails),
):
    entry = authorized_emails.add(body.email, admin.user_id)
    logger.info(f"Admin {admin.user_id} authorized a new email")
    return entry

@app.delete("/api/admin/authorized-emails/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_authorized_email(
    entry_id: str,
    admin: AuthContext = Depends(get_current_admin),
    authorized_emails: AuthorizedEmailRepository = Depends(get_authorized_emails),
):
    authorized_emails.remove(entry_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Validation Functions

@app.post("/functions/validate-upload", response_model=UploadValidationOut, response_model_exclude_none=True)
def validate_upload(
    body: UploadValidationIn,
    request: Request,
    current_user: AuthContext = Depends(get_current_user),
    validator: UploadValidator = Depends(get_upload_validator),
):
    try:
        sanitized = validator.validate(
            current_user,
            body.file_name,
            body.file_size,
            body.file_type,
            client_ip(request),
            request.headers.get("user-agent"),
        )
    except DocumentServiceError as e:
        return JSONResponse(status_code=e.status_code, content={"valid": False, "error": e.message})
    return {"valid": True, "sanitized_file_name": sanitized}

@app.post("/functions/auth-rate-limit", response_model=AuthRateLimitOut, response_model_exclude_none=True)
def auth_rate_limit(
    body: AuthRateLimitIn,
    request: Request,
    auth_limiter: AuthRateLimiter = Depends(get_auth_rate_limiter),
):
    try:
        decision = auth_limiter.check(
            body.action or "", body.email, client_ip(request), request.headers.get("user-agent")
        )
    except InvalidRequest as e:
        return JSONResponse(status_code=400, content={"allowed": False, "error": e.message})
    if not decision.allowed:
        return JSONResponse(status_code=429, content={"allowed": False, "error": decision.error})
    return {"allowed": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )

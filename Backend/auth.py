import getpass
import logging
from typing import Optional

from fastapi import HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from passlib.context import CryptContext

from config import settings
from errors import SignupNotAllowed
from models import AuthContext, Role

logger = logging.getLogger(__name__)

# Argon2 avoids bcrypt version incompatibilities and length limits
pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def hash_access_code(code: str) -> str:
    return pwd_context.hash(code)


def verify_access_code(code: Optional[str], hashed_code: Optional[str]) -> bool:
    if not code or not hashed_code:
        return False
    try:
        return pwd_context.verify(code, hashed_code)
    except ValueError:
        logger.error("SIGNUP_ACCESS_CODE_HASH is not a valid hash")
        return False


def decode_access_token(token: str) -> dict:
    """Verify a Supabase access token and return its claims."""
    try:
        payload = jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=[settings.algorithm],
            audience=settings.jwt_audience,
        )
    except JWTError:
        raise credentials_exception()
    if not payload.get("sub"):
        raise credentials_exception()
    return payload


def build_auth_context(token: str, repository) -> AuthContext:
    payload = decode_access_token(token)
    user_id = payload["sub"]
    try:
        profile = repository.get_profile(user_id)
    except Exception as e:
        logger.error(f"Error fetching profile for {user_id}: {e}")
        raise credentials_exception()
    if profile is None:
        # Profile row not created yet; treat as a regular user
        return AuthContext(user_id=user_id, email=payload.get("email"), role=Role.USER)
    return AuthContext(user_id=user_id, email=profile.email, role=profile.role)


class SignupGate:
    """Applies the one configured signup gate to every signup."""

    def __init__(self, mode: str, authorized_emails, access_code_hash: Optional[str] = None):
        self.mode = mode
        self.authorized_emails = authorized_emails
        self.access_code_hash = access_code_hash

    def check(self, email: str, access_code: Optional[str] = None) -> None:
        if self.mode == "access_code":
            if not verify_access_code(access_code, self.access_code_hash):
                logger.warning("Signup rejected: invalid access code")
                raise SignupNotAllowed("Invalid access code")
            return
        if not self.authorized_emails.is_authorized(email):
            logger.warning("Signup rejected: email not in the authorized list")
            raise SignupNotAllowed("This email is not authorized to sign up")


if __name__ == "__main__":
    # Prints a value for SIGNUP_ACCESS_CODE_HASH
    print(hash_access_code(getpass.getpass("Signup access code: ")))

import hashlib
import logging
from typing import Dict, NamedTuple, Optional

from pydantic import BaseModel
from supabase import Client

from audit import AuditLogger
from errors import InvalidRequest, RateLimited

logger = logging.getLogger(__name__)


class RateLimitRule(NamedTuple):
    max_attempts: int
    window_minutes: int


# Per-IP thresholds; the per-email counter allows EMAIL_LIMIT_MULTIPLIER times more.
AUTH_RATE_LIMITS: Dict[str, RateLimitRule] = {
    "login": RateLimitRule(max_attempts=5, window_minutes=15),
    "signup": RateLimitRule(max_attempts=3, window_minutes=60),
    "reset_password": RateLimitRule(max_attempts=3, window_minutes=60),
}
EMAIL_LIMIT_MULTIPLIER = 2

MASKED_EMAIL = "***masked***"


def hash_email(email: str) -> str:
    """SHA-256 of the lower-cased address; the plaintext is never stored."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()


def mask_email(email: Optional[str]) -> Optional[str]:
    return MASKED_EMAIL if email else None


class SupabaseCounterStore:
    """Counter backed by the check_rate_limit RPC.

    The RPC records the attempt and reports whether it is still within the
    limit in one statement, so concurrent callers cannot both slip past the
    boundary.
    """

    def __init__(self, client: Client):
        self.client = client

    def hit(
        self,
        action_type: str,
        *,
        max_attempts: int,
        window_minutes: int,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> bool:
        response = self.client.rpc("check_rate_limit", {
            "p_action_type": action_type,
            "p_user_id": user_id,
            "p_ip_address": ip_address,
            "p_identifier": identifier,
            "p_max_attempts": max_attempts,
            "p_window_minutes": window_minutes,
        }).execute()
        return bool(response.data)


class RateLimiter:
    def __init__(self, store, fail_open: bool = True):
        self.store = store
        self.fail_open = fail_open

    def check(
        self,
        action_type: str,
        max_attempts: int,
        window_minutes: int,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> bool:
        """Count one attempt and return whether it is allowed."""
        try:
            return self.store.hit(
                action_type,
                max_attempts=max_attempts,
                window_minutes=window_minutes,
                user_id=user_id,
                ip_address=ip_address,
                identifier=identifier,
            )
        except Exception as e:
            logger.error(f"Rate limit check failed for {action_type} (fail_open={self.fail_open}): {e}")
            return self.fail_open


class RateLimitDecision(BaseModel):
    allowed: bool
    error: Optional[str] = None


class AuthRateLimiter:
    """Per-IP and per-email limits for login, signup and password reset."""

    def __init__(self, limiter: RateLimiter, audit: AuditLogger):
        self.limiter = limiter
        self.audit = audit

    def check(
        self,
        action: str,
        email: Optional[str],
        ip_address: str,
        user_agent: Optional[str] = None,
    ) -> RateLimitDecision:
        rule = AUTH_RATE_LIMITS.get(action)
        if rule is None:
            raise InvalidRequest("Invalid action")

        decision = RateLimitDecision(allowed=True)
        if not self.limiter.check(
            f"auth_{action}_ip", rule.max_attempts, rule.window_minutes, ip_address=ip_address
        ):
            decision = RateLimitDecision(
                allowed=False,
                error=f"Too many {action} attempts. Try again in {rule.window_minutes} minutes.",
            )
        elif email and not self.limiter.check(
            f"auth_{action}_email",
            rule.max_attempts * EMAIL_LIMIT_MULTIPLIER,
            rule.window_minutes,
            identifier=hash_email(email),
        ):
            decision = RateLimitDecision(
                allowed=False,
                error=f"Too many attempts for this email. Try again in {rule.window_minutes} minutes.",
            )

        if not decision.allowed:
            logger.warning(f"Blocked auth_{action} from {ip_address}")
        details = {"success": decision.allowed, "email": mask_email(email)}
        if not decision.allowed:
            details["error"] = {"reason": "rate_limit_exceeded"}
        self.audit.record(
            f"auth_{action}",
            resource_type="auth",
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return decision

    def enforce(self, action: str, email: Optional[str], ip_address: str, user_agent: Optional[str] = None) -> None:
        decision = self.check(action, email, ip_address, user_agent)
        if not decision.allowed:
            raise RateLimited(decision.error)

import logging
from typing import Any, Dict, Optional

from supabase import Client

logger = logging.getLogger(__name__)


class AuditLogger:
    """Writes business events through the create_audit_log RPC.

    Failures are logged and swallowed: an audit outage must not block the
    action being audited.
    """

    def __init__(self, client: Client):
        self.client = client

    def record(
        self,
        action_type: str,
        *,
        user_id: Optional[str] = None,
        resource_type: str = "document",
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        params = {
            "p_action_type": action_type,
            "p_user_id": user_id,
            "p_resource_type": resource_type,
            "p_resource_id": resource_id,
            "p_details": details or {},
            "p_ip_address": ip_address,
            "p_user_agent": user_agent,
        }
        try:
            self.client.rpc("create_audit_log", params).execute()
        except Exception as e:
            logger.error(f"Failed to write audit log {action_type}: {e}")

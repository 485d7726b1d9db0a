import logging
from functools import lru_cache

from supabase import create_client, Client, ClientOptions
from config import settings

# Configuring logging
logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """Shared service-role client for table, storage and RPC access.

    Never used for sign in, so its auth headers stay on the service key.
    """
    try:
        return create_client(settings.supabase_url, settings.supabase_key)
    except Exception as e:
        logger.critical(f"Failed to initialize Supabase client: {e}")
        raise


def create_auth_client() -> Client:
    """Throwaway client for one sign up / sign in / reset call.

    Signing in mutates the client's session, so these calls must not share
    the service-role client.
    """
    options = ClientOptions(auto_refresh_token=False, persist_session=False)
    return create_client(settings.supabase_url, settings.auth_key, options=options)

from typing import Optional

from supabase import Client, create_client

from snapsplit.backend.utils.settings import settings


def get_supabase() -> Optional[Client]:
    if not (settings.SUPABASE_URL and settings.SUPABASE_SERVICE_ROLE_KEY):
        return None
    return create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)

import logging
from typing import Optional

from supabase import AsyncClient, acreate_client
from supabase.lib.client_options import AsyncClientOptions

from kidpoints.exceptions import StoreNotConfigured
from kidpoints.settings import Settings, settings as default_settings

log = logging.getLogger("kidpoints.db")


async def get_supabase(cfg: Optional[Settings] = None) -> Optional[AsyncClient]:
    cfg = cfg or default_settings
    if not cfg.configured:
        return None
    try:
        return await acreate_client(
            cfg.supabase_url,
            cfg.supabase_key,
            options=AsyncClientOptions(postgrest_client_timeout=cfg.http_timeout),
        )
    except Exception as e:
        log.error("[DB] Failed to initialize Supabase client: %s", e)
        return None


async def require_supabase(cfg: Optional[Settings] = None) -> AsyncClient:
    client = await get_supabase(cfg)
    if not client:
        raise StoreNotConfigured()
    return client

import logging

from supabase import create_client, Client
from calma.core.config import get_settings

logger = logging.getLogger(__name__)


class SupabaseManager:
    _instance = None
    _client: Client = None

    def __new__(cls):
        if cls._instance is None:
            settings = get_settings()
            if not settings.supabase_configured:
                raise RuntimeError("SUPABASE_URL y SUPABASE_KEY son requeridos para persistir sesiones")
            try:
                client = create_client(settings.SUPABASE_URL, settings.SUPABASE_KEY)
            except Exception as e:
                logger.error(f"Error initializing Supabase client: {e}")
                raise
            cls._client = client
            cls._instance = super(SupabaseManager, cls).__new__(cls)
        return cls._instance

    @property
    def client(self) -> Client:
        return self._client


# Helper function to get the client instance easily
def get_supabase() -> Client:
    return SupabaseManager().client

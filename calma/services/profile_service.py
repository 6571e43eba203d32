import logging
from typing import Optional

from pydantic import ValidationError
from supabase import Client

from calma.core.supabase_client import get_supabase
from calma.schemas.profile import UserProfile

logger = logging.getLogger(__name__)


class ProfileService:
    def __init__(self, client: Optional[Client] = None):
        self.supabase = client or get_supabase()

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        """
        Obtiene el perfil de un usuario por su ID.
        Sin perfil la sesión sigue igual: solo cambian el saludo y el prompt.
        """
        try:
            response = self.supabase.table("profiles").select("*").eq("id", user_id).limit(1).execute()
        except Exception as e:
            logger.warning(f"No se pudo obtener el perfil {user_id}: {e}")
            return None

        if not response.data:
            logger.info(f"Perfil no encontrado: {user_id}")
            return None
        try:
            return UserProfile.model_validate(response.data[0])
        except ValidationError as e:
            logger.warning(f"Perfil {user_id} con datos inválidos, se ignora: {e}")
            return None

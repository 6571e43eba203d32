from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class NamePreference(str, Enum):
    FULL_NAME = 'full_name'
    NICKNAME = 'nickname'
    NONE = 'none'


class UserProfile(BaseModel):
    """Datos del perfil usados para personalizar el saludo y el system prompt"""
    full_name: Optional[str] = None
    nickname: Optional[str] = None
    name_preference: Optional[NamePreference] = NamePreference.FULL_NAME
    assistant_name: Optional[str] = None
    language_preference: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def preferred_name(self) -> str:
        if self.name_preference == NamePreference.NONE:
            return ""
        if self.name_preference == NamePreference.NICKNAME and self.nickname:
            return self.nickname.strip()
        return (self.full_name or "").strip()

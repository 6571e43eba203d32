from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings

Language = Literal["es", "en"]
VoiceGender = Literal["female", "male"]
AIProvider = Literal["groq", "gemini"]

# Etiqueta BCP-47 usada por los motores de voz para cada idioma de la app
LANGUAGE_TAGS = {
    "es": "es-ES",
    "en": "en-US",
}


class Settings(BaseSettings):
    PROJECT_NAME: str = "Calma"

    # Supabase (opcional: sin credenciales la sesión no se persiste)
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""

    # Proveedor de IA (groq | gemini)
    AI_PROVIDER: AIProvider = "groq"
    AI_TEMPERATURE: float = 0.7
    AI_MAX_TOKENS: int = 1024

    # Groq
    GROQ_API_KEY: str = ""
    GROQ_MODEL: str = "llama-3.3-70b-versatile"

    # Gemini
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.0-flash"

    # Preferencias por defecto del asistente
    DEFAULT_LANGUAGE: Language = "es"
    VOICE_GENDER: VoiceGender = "female"

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def supabase_configured(self) -> bool:
        return bool(self.SUPABASE_URL and self.SUPABASE_KEY)


@lru_cache()
def get_settings():
    return Settings()


class VoicePreference(BaseModel):
    """Preferencias de voz resueltas una vez por enunciado contra las voces disponibles"""

    model_config = ConfigDict(frozen=True)

    language_tag: str = "es-ES"
    gender: VoiceGender = "female"
    rate: float = 0.9
    pitch: float = 1.0
    volume: float = 1.0


class SessionConfig(BaseModel):
    """
    Configuración inmutable de una sesión.

    Se construye fuera del núcleo (desde Settings o desde el perfil del
    usuario) y se inyecta en el agregador; el núcleo nunca lee
    configuración ambiental por su cuenta.
    """

    model_config = ConfigDict(frozen=True)

    language: Language = "es"
    voice: VoicePreference = Field(default_factory=VoicePreference)

    # Narración
    max_chunk_length: int = Field(default=200, gt=0)
    chunk_pause_seconds: float = 0.3
    chunk_error_pause_seconds: float = 0.5
    keepalive_interval_seconds: float = 10.0

    # Tiempos de la sesión
    greeting_delay_seconds: float = 0.5
    breathing_delay_seconds: float = 3.0
    duration_tick_seconds: float = 60.0

    # Ejercicio de respiración 4-7-8
    breathing_cycles: int = Field(default=3, ge=1)
    breathing_time_scale: float = Field(default=1.0, ge=0)

    @classmethod
    def from_settings(cls, settings: Settings, language: str = "", **overrides) -> "SessionConfig":
        lang = language or settings.DEFAULT_LANGUAGE
        if lang not in LANGUAGE_TAGS:
            lang = "es"
        voice = VoicePreference(language_tag=LANGUAGE_TAGS[lang], gender=settings.VOICE_GENDER)
        return cls(language=lang, voice=voice, **overrides)

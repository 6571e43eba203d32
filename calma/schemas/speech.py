from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Voice(BaseModel):
    """Voz de síntesis ofrecida por el motor"""
    model_config = ConfigDict(frozen=True)

    name: str
    lang: str = Field(..., description="Etiqueta BCP-47, ej: es-ES")
    gender: Optional[str] = None  # No todos los motores lo informan
    default: bool = False


class RecognitionSegment(BaseModel):
    """Resultado parcial o final del reconocedor"""
    model_config = ConfigDict(frozen=True)

    transcript: str
    is_final: bool = False

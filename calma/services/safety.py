# calma/services/safety.py

"""
Guardrail sobre cada enunciado del usuario, antes de cualquier llamada al
modelo. Coincidencia de subcadenas sin distinguir mayúsculas contra las
listas del idioma activo (calma/core/i18n.py).
"""

from enum import Enum

from calma.core.i18n import get_phrases


class SafetyVerdict(str, Enum):
    CRISIS = "crisis"
    SESSION_END = "session_end"
    CLEAR = "clear"


def _matches(text: str, key: str, language: str) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in get_phrases(key, language))


def detect_crisis(text: str, language: str = "es") -> bool:
    """
    Detecta señales de crisis (ideación suicida, autolesión).
    Si es True el enunciado NO se envía al modelo.
    """
    return _matches(text, "crisis_keywords", language)


def detect_session_end(text: str, language: str = "es") -> bool:
    """Frases de despedida: el enunciado se envía igual y la sesión termina después"""
    return _matches(text, "session_end_phrases", language)


def screen_utterance(text: str, language: str = "es") -> SafetyVerdict:
    # La crisis tiene prioridad: no se programa cierre automático
    if detect_crisis(text, language):
        return SafetyVerdict.CRISIS
    if detect_session_end(text, language):
        return SafetyVerdict.SESSION_END
    return SafetyVerdict.CLEAR

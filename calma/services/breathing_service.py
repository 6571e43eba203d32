# calma/services/breathing_service.py

"""
Ejercicio guiado de respiración 4-7-8 que la sesión lanza cuando el
asistente lo propone.
"""

import asyncio
import logging
from enum import Enum
from typing import Tuple

from calma.core.events import EventHandlerMixin
from calma.core.i18n import BREATHING_PROMPTS, get_translation

logger = logging.getLogger(__name__)


class BreathingPhase(str, Enum):
    INHALE = "inhale"
    HOLD = "hold"
    EXHALE = "exhale"
    REST = "rest"


# Fase y duración en segundos
BREATHING_PATTERN: Tuple[Tuple[BreathingPhase, float], ...] = (
    (BreathingPhase.INHALE, 4),
    (BreathingPhase.HOLD, 7),
    (BreathingPhase.EXHALE, 8),
    (BreathingPhase.REST, 2),
)


class BreathingExercise(EventHandlerMixin):
    """
    Eventos:
        on_phase(phase, cycle, seconds, prompt): inicio de cada fase.

    run() termina al completar los ciclos, con skip() (cuenta como
    completado) o con cancel() (no cuenta).
    """

    _EVENTS = ("on_phase",)

    def __init__(self, cycles: int = 3, time_scale: float = 1.0, language: str = "es"):
        self.cycles = cycles
        self.time_scale = time_scale
        self.language = language
        self._stop = asyncio.Event()
        self._cancelled = False

    @property
    def name(self) -> str:
        return get_translation("breathing_exercise_name", self.language)

    async def run(self) -> bool:
        """Devuelve True si el ejercicio se completó (o se saltó), False si se canceló"""
        prompts = BREATHING_PROMPTS.get(self.language, BREATHING_PROMPTS["es"])
        for cycle in range(1, self.cycles + 1):
            for phase, seconds in BREATHING_PATTERN:
                if self._stop.is_set():
                    return not self._cancelled
                await self._call_event_handler("on_phase", phase, cycle, seconds, prompts[phase.value])
                if await self._wait(seconds * self.time_scale):
                    return not self._cancelled
        logger.info(f"Ejercicio de respiración completado ({self.cycles} ciclos)")
        return True

    def skip(self) -> None:
        self._stop.set()

    def cancel(self) -> None:
        self._cancelled = True
        self._stop.set()

    async def _wait(self, seconds: float) -> bool:
        """Espera la fase; True si se interrumpió antes"""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

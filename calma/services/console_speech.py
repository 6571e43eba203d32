# calma/services/console_speech.py

"""
Motor de síntesis para la terminal: no produce audio, simula la duración
de cada fragmento para que la sesión tenga el mismo ritmo que con voz.
"""

import asyncio
from typing import List, Optional, TextIO

from calma.schemas.speech import Voice
from calma.services.speech import SpeechSynthesizer, Utterance

CONSOLE_VOICES = [
    Voice(name="Consola (mujer)", lang="es-ES", gender="female", default=True),
    Voice(name="Consola (hombre)", lang="es-ES", gender="male"),
    Voice(name="Console (female)", lang="en-US", gender="female"),
    Voice(name="Console (male)", lang="en-US", gender="male"),
]


class ConsoleSynthesizer(SpeechSynthesizer):

    def __init__(self, chars_per_second: float = 0.0, stream: Optional[TextIO] = None):
        # chars_per_second = 0 -> cada fragmento termina en la siguiente vuelta del loop
        self.chars_per_second = chars_per_second
        self.stream = stream
        self._current: Optional[Utterance] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._paused = False

    @property
    def speaking(self) -> bool:
        return self._current is not None

    @property
    def paused(self) -> bool:
        return self._paused

    def get_voices(self) -> List[Voice]:
        return list(CONSOLE_VOICES)

    def speak(self, utterance: Utterance) -> None:
        if self._current is not None:
            self.cancel()

        self._current = utterance
        if self.stream is not None:
            print(f"  ♪ {utterance.text}", file=self.stream)
        if utterance.on_start:
            utterance.on_start()

        delay = len(utterance.text) / self.chars_per_second if self.chars_per_second > 0 else 0
        self._handle = asyncio.get_running_loop().call_later(delay, self._finish, utterance)

    def _finish(self, utterance: Utterance) -> None:
        if self._current is not utterance:
            return
        self._current = None
        self._handle = None
        if utterance.on_end:
            utterance.on_end()

    def cancel(self) -> None:
        utterance, self._current = self._current, None
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if utterance is not None and utterance.on_error:
            utterance.on_error("canceled")

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

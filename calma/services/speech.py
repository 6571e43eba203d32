# calma/services/speech.py

"""
Capacidades de voz que el entorno entrega a la sesión.

Los motores reales (navegador, SDK de la plataforma, consola) implementan
estas interfaces; el núcleo de sesión solo conoce los contratos. Los
motores son únicos por proceso y la sesión los usa en exclusiva mientras
está viva.
"""

from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from calma.core.events import EventHandlerMixin
from calma.schemas.speech import Voice


class Utterance:
    """
    Un enunciado para el sintetizador. El motor invoca on_start/on_end al
    empezar y terminar, y on_error(code) si falla; "canceled" e
    "interrupted" son los códigos de una cancelación.
    """

    def __init__(
        self,
        text: str,
        lang: str = "es-ES",
        rate: float = 1.0,
        pitch: float = 1.0,
        volume: float = 1.0,
        voice: Optional[Voice] = None,
    ):
        self.text = text
        self.lang = lang
        self.rate = rate
        self.pitch = pitch
        self.volume = volume
        self.voice = voice
        self.on_start: Optional[Callable[[], None]] = None
        self.on_end: Optional[Callable[[], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None

    def __repr__(self) -> str:
        return f"Utterance({self.text[:30]!r}, lang={self.lang})"


class SpeechSynthesizer(ABC):
    """Texto a voz. Todos los métodos retornan de inmediato."""

    @abstractmethod
    def speak(self, utterance: Utterance) -> None:
        ...

    @abstractmethod
    def cancel(self) -> None:
        """Detiene el enunciado en curso y vacía la cola del motor"""

    @abstractmethod
    def pause(self) -> None:
        ...

    @abstractmethod
    def resume(self) -> None:
        ...

    @abstractmethod
    def get_voices(self) -> List[Voice]:
        ...

    @property
    @abstractmethod
    def speaking(self) -> bool:
        ...

    @property
    @abstractmethod
    def paused(self) -> bool:
        ...


class SpeechRecognizer(EventHandlerMixin, ABC):
    """
    Voz a texto, continuo y con resultados intermedios.

    Eventos:
        on_result(segments, result_index): lista completa de segmentos
            reconocidos y el índice del primero que cambió.
        on_error(code): "no-speech", "aborted", "audio-capture",
            "not-allowed", "network"...
        on_end(): el motor dejó de escuchar (por stop(), abort() o timeout).

    start() lanza MicrophoneUnavailable si el motor no puede arrancar.
    """

    _EVENTS = ("on_result", "on_error", "on_end")

    def __init__(self, language: str = "es-ES"):
        self.language = language
        self.continuous = True
        self.interim_results = True

    @abstractmethod
    def start(self) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        """Deja de escuchar; los resultados pendientes todavía se entregan"""

    @abstractmethod
    def abort(self) -> None:
        """Deja de escuchar descartando lo pendiente"""

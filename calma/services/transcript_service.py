# calma/services/transcript_service.py

"""
Adquisición del enunciado del usuario: reconocimiento de voz continuo con
resultados intermedios, o texto escrito como alternativa.
"""

import logging
from typing import List, Optional

from calma.core.errors import MicrophoneUnavailable
from calma.core.events import EventHandlerMixin
from calma.schemas.speech import RecognitionSegment
from calma.services.speech import SpeechRecognizer

logger = logging.getLogger(__name__)

# Errores tras los cuales no se vuelve a intentar con el micrófono
PERMANENT_ERRORS = ("audio-capture", "not-allowed")


class TranscriptAcquisition(EventHandlerMixin):
    """
    Eventos:
        on_partial_transcript(text): texto vivo (finales + intermedios).
        on_commit(text): enunciado confirmado, hablado o escrito.
        on_listening_stopped(): se dejó de escuchar sin confirmar nada.
        on_microphone_unavailable(reason): pasar a texto escrito.
    """

    _EVENTS = (
        "on_partial_transcript",
        "on_commit",
        "on_listening_stopped",
        "on_microphone_unavailable",
    )

    def __init__(self, recognizer: Optional[SpeechRecognizer], language_tag: str = "es-ES"):
        self._recognizer = recognizer
        self._language_tag = language_tag
        self._listening = False
        self._user_stopped = False
        self._aborted = False
        self._final_text = ""
        self._unavailable_reason: Optional[str] = None if recognizer else "unsupported"

        if recognizer is not None:
            recognizer.add_event_handler("on_result", self._handle_result)
            recognizer.add_event_handler("on_error", self._handle_error)
            recognizer.add_event_handler("on_end", self._handle_end)

    @property
    def is_listening(self) -> bool:
        return self._listening

    @property
    def microphone_available(self) -> bool:
        return self._unavailable_reason is None

    def start_listening(self) -> None:
        """
        Empieza a escuchar.

        Raises:
            MicrophoneUnavailable: no hay reconocedor, el permiso fue
                denegado antes o el motor no pudo arrancar.
        """
        if self._unavailable_reason is not None:
            raise MicrophoneUnavailable(self._unavailable_reason)
        if self._listening:
            return

        self._final_text = ""
        self._user_stopped = False
        self._aborted = False

        self._recognizer.language = self._language_tag
        self._recognizer.continuous = True
        self._recognizer.interim_results = True
        try:
            self._recognizer.start()
        except MicrophoneUnavailable as e:
            if e.reason in PERMANENT_ERRORS:
                self._unavailable_reason = e.reason
            logger.warning(f"No se pudo iniciar el reconocimiento: {e.reason}")
            raise
        self._listening = True

    def stop_listening(self) -> None:
        """Parada pedida por el usuario: lo reconocido se confirma al terminar el motor"""
        if not self._listening:
            return
        self._user_stopped = True
        self._recognizer.stop()

    def cancel(self) -> None:
        """Aborta el reconocimiento y descarta el texto no confirmado"""
        if not self._listening:
            return
        self._listening = False
        self._aborted = True
        self._final_text = ""
        self._recognizer.abort()

    async def submit_text(self, text: str) -> bool:
        """Camino escrito: se trata igual que un enunciado hablado confirmado"""
        text = (text or "").strip()
        if not text:
            return False
        await self._call_event_handler("on_commit", text)
        return True

    # ------------------------------------------------------------------
    # Eventos del reconocedor
    # ------------------------------------------------------------------

    async def _handle_result(self, segments: List[RecognitionSegment], result_index: int = 0) -> None:
        if not self._listening:
            return
        interim = ""
        for segment in segments[result_index:]:
            if segment.is_final:
                self._final_text += segment.transcript + " "
            else:
                interim += segment.transcript
        current = (self._final_text + interim).strip()
        await self._call_event_handler("on_partial_transcript", current)

    async def _handle_error(self, code: str) -> None:
        if code == "no-speech":
            # Silencio: se sigue escuchando
            return
        if code == "aborted":
            self._aborted = True
            return
        if code in PERMANENT_ERRORS:
            logger.warning(f"Micrófono no disponible ({code}), se usa texto escrito")
            self._unavailable_reason = code
            self._listening = False
            self._final_text = ""
            await self._call_event_handler("on_microphone_unavailable", code)
            return
        logger.warning(f"Error transitorio del reconocedor: {code}")

    async def _handle_end(self) -> None:
        if not self._listening:
            return
        self._listening = False
        text = self._final_text.strip()
        self._final_text = ""

        if text and self._user_stopped and not self._aborted:
            await self._call_event_handler("on_commit", text)
        else:
            await self._call_event_handler("on_listening_stopped")

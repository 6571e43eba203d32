# calma/services/narration_service.py

"""
Narración de los mensajes del asistente.

Los motores de síntesis cortan o se cuelgan con enunciados largos, así que
el texto se parte en fragmentos de ~200 caracteres que se reproducen
estrictamente en orden: el fragmento n+1 empieza solo cuando el motor
informó el fin del fragmento n.
"""

import asyncio
import logging
import re
from typing import Iterable, List, Optional, Sequence

from calma.core.config import SessionConfig, VoicePreference
from calma.core.i18n import get_phrases
from calma.schemas.speech import Voice
from calma.services.markers import strip_markers
from calma.services.speech import SpeechSynthesizer, Utterance

logger = logging.getLogger(__name__)

SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?…])\s+")
CLAUSE_SPLIT_RE = re.compile(r"(?<=[,;])\s+")

# Códigos de error del motor que significan cancelación, no fallo
CANCEL_CODES = ("canceled", "interrupted")

VOICE_NAME_HINTS = {
    "female": ("female", "mujer", "helena", "laura", "monica", "paulina", "sabina", "lucia", "samantha", "victoria", "zira"),
    "male": ("male", "hombre", "jorge", "diego", "pablo", "carlos", "juan", "alvaro", "daniel", "david", "fred"),
}


# ============================================================================
# PREPARACIÓN DEL TEXTO
# ============================================================================

def _pack(pieces: Iterable[str], max_length: int) -> List[str]:
    """Une piezas consecutivas mientras quepan en max_length"""
    chunks = []
    current = ""
    for piece in pieces:
        piece = piece.strip()
        if not piece:
            continue
        candidate = f"{current} {piece}" if current else piece
        if len(candidate) <= max_length:
            current = candidate
        else:
            if current:
                chunks.append(current)
            current = piece
    if current:
        chunks.append(current)
    return chunks


def split_into_chunks(text: str, max_length: int = 200) -> List[str]:
    """
    Parte el texto en fragmentos de como máximo max_length caracteres.

    Cascada: oraciones, luego cláusulas (comas y punto y coma), luego
    palabras. Una palabra más larga que max_length queda sola y sin partir.
    """
    chunks = []
    for sentence in SENTENCE_SPLIT_RE.split(" ".join((text or "").split())):
        if not sentence:
            continue
        if len(sentence) <= max_length:
            chunks.append(sentence)
            continue
        for clause in _pack(CLAUSE_SPLIT_RE.split(sentence), max_length):
            if len(clause) <= max_length:
                chunks.append(clause)
            else:
                chunks.extend(_pack(clause.split(" "), max_length))
    return chunks


def strip_for_narration(text: str, language: str = "es") -> str:
    """Quita los bloques de marcadores y el resumen final, que no se narra"""
    clean = strip_markers(text)
    lowered = clean.lower()
    positions = [lowered.find(phrase) for phrase in get_phrases("summary_lead_ins", language)]
    positions = [position for position in positions if position >= 0]
    if positions:
        clean = clean[:min(positions)]
    return clean.strip()


def select_voice(voices: Sequence[Voice], preference: VoicePreference) -> Optional[Voice]:
    """
    Voz para el idioma y género preferidos. Si no hay ninguna del idioma
    devuelve None y el motor usa su voz por defecto.
    """
    prefix = preference.language_tag.split("-")[0].lower()
    candidates = [voice for voice in voices if voice.lang.lower().replace("_", "-").startswith(prefix)]
    if not candidates:
        return None

    for voice in candidates:
        if voice.gender and voice.gender.lower() == preference.gender:
            return voice

    hints = VOICE_NAME_HINTS.get(preference.gender, ())
    for voice in candidates:
        tokens = re.findall(r"\w+", voice.name.lower())
        if any(hint in tokens for hint in hints):
            return voice

    return candidates[0]


# ============================================================================
# REPRODUCTOR
# ============================================================================

class NarrationPlayer:
    """
    Reproduce un mensaje a la vez. speak() de un mensaje nuevo cancela el
    anterior (no hay cola entre mensajes).
    """

    def __init__(self, synthesizer: SpeechSynthesizer, config: SessionConfig):
        self._synth = synthesizer
        self._config = config
        self._generation = 0
        self._speaking = False
        self._pending: Optional[asyncio.Future] = None

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    async def speak(self, text: str) -> bool:
        """
        Narra el texto hasta el final.

        Returns:
            True si se reprodujeron (o saltaron por error) todos los
            fragmentos, False si la narración fue cancelada.
        """
        self.cancel()
        generation = self._generation

        chunks = split_into_chunks(
            strip_for_narration(text, self._config.language),
            self._config.max_chunk_length,
        )
        if not chunks:
            return True

        voice = select_voice(self._synth.get_voices(), self._config.voice)
        self._speaking = True
        keepalive = asyncio.create_task(self._keep_alive())
        logger.debug(f"Narrando {len(chunks)} fragmentos")

        try:
            for index, chunk in enumerate(chunks):
                outcome = await self._speak_chunk(chunk, voice)
                if generation != self._generation or outcome in CANCEL_CODES:
                    return False

                pause = self._config.chunk_pause_seconds
                if outcome is not None:
                    logger.warning(f"Error de síntesis '{outcome}' en el fragmento {index + 1}, se continúa")
                    pause = self._config.chunk_error_pause_seconds

                if index < len(chunks) - 1:
                    await asyncio.sleep(pause)
                    if generation != self._generation:
                        return False
            return True
        except asyncio.CancelledError:
            self.cancel()
            raise
        finally:
            keepalive.cancel()
            if generation == self._generation:
                self._speaking = False
                self._pending = None

    def cancel(self) -> None:
        """Corta el fragmento en curso y descarta los que faltan"""
        self._generation += 1
        was_speaking = self._speaking
        self._speaking = False

        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.set_result(CANCEL_CODES[0])
        if was_speaking:
            self._synth.cancel()

    async def _speak_chunk(self, chunk: str, voice: Optional[Voice]) -> Optional[str]:
        """Devuelve None si el fragmento terminó bien, o el código de error"""
        future = asyncio.get_running_loop().create_future()
        self._pending = future

        def resolve(outcome: Optional[str]) -> None:
            if not future.done():
                future.set_result(outcome)

        preference = self._config.voice
        utterance = Utterance(
            chunk,
            lang=voice.lang if voice else preference.language_tag,
            rate=preference.rate,
            pitch=preference.pitch,
            volume=preference.volume,
            voice=voice,
        )
        utterance.on_end = lambda: resolve(None)
        utterance.on_error = lambda code: resolve(code or "unknown")

        if self._synth.paused:
            self._synth.resume()
        self._synth.speak(utterance)
        return await future

    async def _keep_alive(self) -> None:
        # Algunos motores se detienen solos con enunciados largos
        interval = self._config.keepalive_interval_seconds
        if interval <= 0:
            return
        while True:
            await asyncio.sleep(interval)
            if self._synth.speaking:
                self._synth.pause()
                self._synth.resume()

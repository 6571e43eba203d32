# calma/services/session_service.py

"""
Orquestador de una sesión de conversación terapéutica.

Flujo de cada turno:
    adquisición -> guardrail de seguridad -> modelo -> marcadores -> narración

La sesión es la única dueña del borrador del registro hasta que lo congela
en end_session(); toda la UI se deriva de la fase actual (SessionPhase)
en lugar de banderas sueltas.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from calma.core.config import SessionConfig
from calma.core.errors import MicrophoneUnavailable, PersistenceError, ProviderError, TurnInFlightError
from calma.core.events import EventHandlerMixin
from calma.core.i18n import DEFAULT_TASKS, get_translation
from calma.core.log import log_structured
from calma.schemas.profile import UserProfile
from calma.schemas.session import (
    ConversationTurn,
    EmotionalAnalysis,
    ProposedTask,
    Role,
    SessionDraft,
    SessionPhase,
    SessionRecord,
)
from calma.services.ai_service import TurnDispatcher
from calma.services.breathing_service import BreathingExercise
from calma.services.markers import (
    extract_analysis,
    extract_tasks,
    parse_analysis,
    parse_tasks,
    strip_markers,
    suggests_breathing_exercise,
)
from calma.services.narration_service import NarrationPlayer
from calma.services.safety import SafetyVerdict, screen_utterance
from calma.services.session_repository import SessionRepository
from calma.services.transcript_service import TranscriptAcquisition

logger = logging.getLogger(__name__)

# Fases en las que se acepta un enunciado del usuario
INPUT_PHASES = (SessionPhase.AWAITING_INPUT, SessionPhase.AWAITING_TYPED, SessionPhase.LISTENING)


def default_tasks(language: str) -> List[ProposedTask]:
    return [ProposedTask(**task) for task in DEFAULT_TASKS.get(language, DEFAULT_TASKS["es"])]


class SessionAggregator(EventHandlerMixin):
    """
    Eventos:
        on_phase_changed(phase)
        on_message(turn, display_text): turno agregado; display_text sin marcadores.
        on_partial_transcript(text)
        on_crisis(title, message): mostrar recursos de ayuda, bloqueante.
        on_breathing_phase(phase, cycle, seconds, prompt)
        on_session_ended(record)
    """

    _EVENTS = (
        "on_phase_changed",
        "on_message",
        "on_partial_transcript",
        "on_crisis",
        "on_breathing_phase",
        "on_session_ended",
    )

    def __init__(
        self,
        config: SessionConfig,
        dispatcher: TurnDispatcher,
        player: NarrationPlayer,
        acquisition: TranscriptAcquisition,
        repository: Optional[SessionRepository] = None,
        profile: Optional[UserProfile] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self._dispatcher = dispatcher
        self._player = player
        self._acquisition = acquisition
        self._repository = repository
        self._profile = profile
        self._clock = clock

        self._phase = SessionPhase.IDLE
        self._draft: Optional[SessionDraft] = None
        self._record: Optional[SessionRecord] = None
        self._ending = False
        self._end_task: Optional[asyncio.Task] = None
        self._ticker: Optional[asyncio.Task] = None
        self._breathing: Optional[BreathingExercise] = None
        self.handoff_succeeded: Optional[bool] = None

        acquisition.add_event_handler("on_partial_transcript", self._handle_partial_transcript)
        acquisition.add_event_handler("on_commit", self.handle_user_utterance)
        acquisition.add_event_handler("on_listening_stopped", self._handle_listening_stopped)
        acquisition.add_event_handler("on_microphone_unavailable", self._handle_microphone_unavailable)

    # ------------------------------------------------------------------
    # Estado
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def record(self) -> Optional[SessionRecord]:
        """Registro congelado; None mientras la sesión no terminó"""
        return self._record

    @property
    def transcript(self) -> Tuple[ConversationTurn, ...]:
        if self._record is not None:
            return self._record.transcript
        return tuple(self._draft.transcript) if self._draft else ()

    @property
    def duration_minutes(self) -> int:
        return self._draft.duration_minutes if self._draft else 0

    @property
    def language(self) -> str:
        return self.config.language

    def _ready_phase(self) -> SessionPhase:
        if self._acquisition.microphone_available:
            return SessionPhase.AWAITING_INPUT
        return SessionPhase.AWAITING_TYPED

    async def _set_phase(self, phase: SessionPhase) -> None:
        if phase == self._phase:
            return
        logger.debug(f"Fase {self._phase.value} -> {phase.value}")
        self._phase = phase
        await self._call_event_handler("on_phase_changed", phase)

    async def _add_turn(self, role: Role, text: str) -> ConversationTurn:
        turn = self._draft.append_turn(role, text)
        display = strip_markers(text) if role == Role.ASSISTANT else text
        await self._call_event_handler("on_message", turn, display)
        return turn

    # ------------------------------------------------------------------
    # Inicio
    # ------------------------------------------------------------------

    def _greeting(self) -> str:
        name = self._profile.preferred_name if self._profile else ""
        name = f", {name}" if name else ""
        assistant_name = self._profile.assistant_name if self._profile else None
        if assistant_name:
            return get_translation("greeting_with_assistant", self.language, name=name, assistant_name=assistant_name)
        return get_translation("greeting", self.language, name=name)

    async def start(self) -> None:
        """Crea el borrador, arranca el contador de duración y narra el saludo"""
        if self._phase != SessionPhase.IDLE:
            return

        self._draft = SessionDraft.start(self._clock())
        log_structured(
            logger, "info", "session_started",
            session_id=str(self._draft.id),
            language=self.language,
            time_of_day=self._draft.time_of_day.value,
        )
        self._ticker = asyncio.create_task(self._tick_duration())
        await self._set_phase(SessionPhase.GREETING)

        await asyncio.sleep(self.config.greeting_delay_seconds)
        if self._ending:
            return
        greeting = self._greeting()
        await self._add_turn(Role.ASSISTANT, greeting)
        await self._player.speak(greeting)
        if self._ending:
            return
        await self._set_phase(self._ready_phase())

    async def _tick_duration(self) -> None:
        interval = self.config.duration_tick_seconds
        if interval <= 0:
            return
        while True:
            await asyncio.sleep(interval)
            self._draft.duration_minutes += 1

    # ------------------------------------------------------------------
    # Entrada del usuario
    # ------------------------------------------------------------------

    async def start_listening(self) -> bool:
        if self._phase != SessionPhase.AWAITING_INPUT:
            return False
        try:
            self._acquisition.start_listening()
        except MicrophoneUnavailable as e:
            logger.warning(f"Micrófono no disponible ({e.reason}), se pasa a texto escrito")
            if not self._acquisition.microphone_available:
                await self._set_phase(SessionPhase.AWAITING_TYPED)
            return False
        await self._set_phase(SessionPhase.LISTENING)
        return True

    async def stop_listening(self) -> None:
        if self._phase == SessionPhase.LISTENING:
            self._acquisition.stop_listening()

    async def submit_text(self, text: str) -> bool:
        if self._phase not in INPUT_PHASES:
            return False
        return await self._acquisition.submit_text(text)

    async def _handle_partial_transcript(self, text: str) -> None:
        if not self._ending:
            await self._call_event_handler("on_partial_transcript", text)

    async def _handle_listening_stopped(self) -> None:
        if self._phase == SessionPhase.LISTENING:
            await self._set_phase(self._ready_phase())

    async def _handle_microphone_unavailable(self, reason: str) -> None:
        if self._phase in (SessionPhase.LISTENING, SessionPhase.AWAITING_INPUT):
            await self._set_phase(SessionPhase.AWAITING_TYPED)

    async def handle_user_utterance(self, text: str) -> bool:
        """
        Procesa un enunciado confirmado (hablado o escrito).

        Returns:
            False si la sesión no aceptaba entrada en su fase actual.
        """
        text = (text or "").strip()
        if self._ending or self._phase not in INPUT_PHASES or self._dispatcher.in_flight or not text:
            logger.debug(f"Enunciado ignorado en fase {self._phase.value}")
            return False

        # Reclamar la fase antes del primer await: los handlers de la UI pueden ceder el loop
        self._phase = SessionPhase.DISPATCHING
        turn = await self._add_turn(Role.USER, text)

        verdict = screen_utterance(text, self.language)
        if verdict == SafetyVerdict.CRISIS:
            log_structured(logger, "warning", "crisis_detected", session_id=str(self._draft.id))
            await self._set_phase(SessionPhase.CRISIS_INTERRUPT)
            await self._call_event_handler(
                "on_crisis",
                get_translation("crisis_title", self.language),
                get_translation("crisis_message", self.language),
            )
            return True

        end_requested = verdict == SafetyVerdict.SESSION_END
        await self._call_event_handler("on_phase_changed", SessionPhase.DISPATCHING)
        if self._ending:
            return True

        try:
            reply = await self._dispatcher.send_turn(text)
        except TurnInFlightError:
            logger.warning("Petición al modelo ya en curso, se descarta el enunciado")
            if self._draft.transcript and self._draft.transcript[-1] is turn:
                self._draft.transcript.pop()
            await self._set_phase(self._ready_phase())
            return False
        except ProviderError as e:
            logger.warning(f"Fallo del proveedor, se usa respuesta de respaldo: {e}")
            reply = get_translation("fallback_reply", self.language)

        # La sesión pudo terminar mientras esperábamos al modelo
        if self._ending:
            return True

        await self._add_turn(Role.ASSISTANT, reply)
        await self._player.speak(reply)
        if self._ending:
            return True

        if end_requested:
            # La despedida ya se escuchó completa
            await self.end_session()
            return True

        if suggests_breathing_exercise(reply, self.language):
            await self._run_breathing_exercise()
            if self._ending:
                return True

        await self._set_phase(self._ready_phase())
        return True

    # ------------------------------------------------------------------
    # Crisis y respiración
    # ------------------------------------------------------------------

    async def dismiss_crisis(self) -> None:
        if self._phase == SessionPhase.CRISIS_INTERRUPT:
            await self._set_phase(self._ready_phase())

    async def leave_after_crisis(self) -> Optional[SessionRecord]:
        if self._phase != SessionPhase.CRISIS_INTERRUPT:
            return None
        return await self.end_session()

    def skip_breathing(self) -> bool:
        if self._breathing is None:
            return False
        self._breathing.skip()
        return True

    async def _handle_breathing_phase(self, phase, cycle, seconds, prompt) -> None:
        await self._call_event_handler("on_breathing_phase", phase, cycle, seconds, prompt)

    async def _run_breathing_exercise(self) -> None:
        await asyncio.sleep(self.config.breathing_delay_seconds)
        if self._ending:
            return

        exercise = BreathingExercise(
            cycles=self.config.breathing_cycles,
            time_scale=self.config.breathing_time_scale,
            language=self.language,
        )
        exercise.add_event_handler("on_phase", self._handle_breathing_phase)
        self._breathing = exercise
        await self._set_phase(SessionPhase.BREATHING_EXERCISE)
        try:
            completed = await exercise.run()
        finally:
            self._breathing = None

        if not completed or self._ending:
            return

        self._draft.exercises_completed.append(exercise.name)
        follow_up = get_translation("breathing_follow_up", self.language)
        await self._add_turn(Role.ASSISTANT, follow_up)
        await self._player.speak(follow_up)

    # ------------------------------------------------------------------
    # Cierre
    # ------------------------------------------------------------------

    async def end_session(self) -> SessionRecord:
        """
        Termina la sesión y devuelve el registro congelado. Llamadas
        repetidas esperan y devuelven el mismo registro.
        """
        if self._end_task is None:
            self._ending = True
            self._end_task = asyncio.ensure_future(self._finish())
        return await asyncio.shield(self._end_task)

    async def _finish(self) -> SessionRecord:
        # Primero cortar voz y reconocimiento para que ningún callback tardío toque el registro
        self._acquisition.cancel()
        self._player.cancel()
        if self._breathing is not None:
            self._breathing.cancel()
        if self._ticker is not None:
            self._ticker.cancel()

        await self._set_phase(SessionPhase.ENDING)

        draft = self._draft or SessionDraft.start(self._clock())
        analysis = extract_analysis(draft.transcript)
        tasks = extract_tasks(draft.transcript)
        if draft.transcript and analysis is None and not tasks:
            analysis, tasks = await self._request_retroactive_summary()

        self._record = draft.finalize(
            analysis=analysis,
            tasks=tasks or default_tasks(self.language),
            fallback_exercise=get_translation("default_exercise", self.language),
        )
        log_structured(
            logger, "info", "session_finalized",
            session_id=str(self._record.id),
            duration_minutes=self._record.duration_minutes,
            turns=len(self._record.transcript),
            tasks=len(self._record.tasks),
            analysis_extracted=analysis is not None,
        )

        if self._repository is not None:
            await self.hand_off()

        await self._set_phase(SessionPhase.TERMINATED)
        await self._call_event_handler("on_session_ended", self._record)
        return self._record

    async def _request_retroactive_summary(self) -> Tuple[Optional[EmotionalAnalysis], List[ProposedTask]]:
        """Una sola petición extra; cualquier fallo cae en los valores por defecto"""
        if self._dispatcher.in_flight:
            logger.info("Petición al modelo aún en curso, se omite el resumen retroactivo")
            return None, []
        try:
            reply = await self._dispatcher.request_summary()
        except ProviderError as e:
            logger.warning(f"Resumen retroactivo fallido, se usan valores por defecto: {e}")
            return None, []
        return parse_analysis(reply), parse_tasks(reply)

    async def hand_off(self) -> bool:
        """
        Entrega el registro congelado al repositorio. Si falla, el registro
        queda intacto y se puede volver a llamar.
        """
        if self._record is None or self._repository is None:
            return False
        try:
            await self._repository.save(self._record)
        except PersistenceError as e:
            logger.error(f"No se pudo guardar la sesión: {e}")
            self.handoff_succeeded = False
            return False
        self.handoff_succeeded = True
        return True

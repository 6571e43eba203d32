import asyncio
from datetime import datetime

import pytest

from calma.core.errors import ProviderError
from calma.core.i18n import get_translation
from calma.schemas.profile import NamePreference, UserProfile
from calma.schemas.session import EmotionalAnalysis, Evolution, Role, SessionPhase, TimeOfDay
from calma.schemas.speech import RecognitionSegment
from calma.services.session_service import default_tasks
from conftest import FakeRecognizer, FakeRepository, FakeSynthesizer

REPLY_WITH_MARKERS = (
    "Ha sido un placer acompañarte, cuídate mucho.\n"
    "[ANALISIS_INICIO]\n"
    "Emocion_Predominante: estrés\n"
    "Intensidad: 6\n"
    "Evolucion: mejoró\n"
    "Top_Emociones: estrés:70, calma:30\n"
    "[ANALISIS_FIN]\n"
    "[TAREA_INICIO]\n"
    "Titulo: Caminar\n"
    "Descripcion: Sal a caminar 20 minutos.\n"
    "Frecuencia: semanal\n"
    "Puntos: 100\n"
    "[TAREA_FIN]"
)


def collect(session, event):
    calls = []
    session.add_event_handler(event, lambda *args: calls.append(args))
    return calls


class TestStart:
    @pytest.mark.asyncio
    async def test_greets_and_waits_for_typed_input(self, make_session):
        ctx = make_session()
        phases = collect(ctx.session, "on_phase_changed")

        await ctx.session.start()

        assert [phase for (phase,) in phases] == [SessionPhase.GREETING, SessionPhase.AWAITING_TYPED]
        [greeting] = ctx.session.transcript
        assert greeting.role == Role.ASSISTANT
        assert greeting.text == get_translation("greeting", "es", name="")
        assert " ".join(ctx.synth.texts("end")) == greeting.text
        # El saludo no se envía al modelo
        assert ctx.dispatcher.history == ()

    @pytest.mark.asyncio
    async def test_with_recognizer_waits_for_voice(self, make_session):
        ctx = make_session(recognizer=FakeRecognizer())
        await ctx.session.start()
        assert ctx.session.phase == SessionPhase.AWAITING_INPUT

    @pytest.mark.asyncio
    async def test_personalized_greeting(self, make_session):
        profile = UserProfile(
            full_name="Ana Pérez",
            nickname="Anita",
            name_preference=NamePreference.NICKNAME,
            assistant_name="Luna",
        )
        ctx = make_session(profile=profile)
        await ctx.session.start()

        assert ctx.session.transcript[0].text.startswith("Hola, Anita, soy Luna.")

    @pytest.mark.asyncio
    async def test_time_of_day_from_clock(self, make_session):
        ctx = make_session(now=datetime(2024, 5, 1, 19, 5))
        await ctx.session.start()
        record = await ctx.session.end_session()

        assert record.time_of_day == TimeOfDay.EVENING
        assert record.started_at == datetime(2024, 5, 1, 19, 5)


class TestTurns:
    @pytest.mark.asyncio
    async def test_turn_is_dispatched_and_narrated(self, make_session):
        ctx = make_session(replies=["Gracias por contarme. ¿Qué pasó después?"])
        messages = collect(ctx.session, "on_message")
        await ctx.session.start()

        assert await ctx.session.submit_text("tuve un día difícil") is True

        assert [turn.text for turn in ctx.session.transcript][1:] == [
            "tuve un día difícil",
            "Gracias por contarme. ¿Qué pasó después?",
        ]
        assert ctx.synth.texts("end")[-2:] == ["Gracias por contarme.", "¿Qué pasó después?"]
        assert ctx.session.phase == SessionPhase.AWAITING_TYPED
        assert len(messages) == 3

    @pytest.mark.asyncio
    async def test_markers_hidden_from_display_but_kept_in_transcript(self, make_session):
        ctx = make_session(replies=["Entiendo. [TAREA_INICIO]\nTitulo: x\nDescripcion: y\n[TAREA_FIN]"])
        messages = collect(ctx.session, "on_message")
        await ctx.session.start()
        await ctx.session.submit_text("hola")

        turn, display = messages[-1]
        assert display == "Entiendo."
        assert "[TAREA_INICIO]" in turn.text

    @pytest.mark.asyncio
    async def test_provider_failure_uses_fallback(self, make_session):
        ctx = make_session(replies=[ProviderError("503"), "Sigo aquí."])
        await ctx.session.start()

        await ctx.session.submit_text("hola")

        fallback = get_translation("fallback_reply", "es")
        assert ctx.session.transcript[-1].text == fallback
        assert ctx.session.phase == SessionPhase.AWAITING_TYPED
        # La respuesta de respaldo no forma parte del historial del modelo
        assert fallback not in [turn.text for turn in ctx.dispatcher.history]

        await ctx.session.submit_text("¿sigues ahí?")
        assert ctx.session.transcript[-1].text == "Sigo aquí."

    @pytest.mark.asyncio
    async def test_input_rejected_while_dispatching(self, make_session, wait_until):
        ctx = make_session(replies=["ok"])
        ctx.provider.gate = asyncio.Event()
        await ctx.session.start()

        turn = asyncio.create_task(ctx.session.submit_text("uno"))
        await wait_until(lambda: ctx.session.phase == SessionPhase.DISPATCHING)

        assert await ctx.session.submit_text("dos") is False

        ctx.provider.gate.set()
        assert await turn is True
        assert len(ctx.provider.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_input_with_async_display_handler(self, make_session):
        ctx = make_session(replies=["uno"])
        await ctx.session.start()

        @ctx.session.event_handler("on_message")
        async def render_message(turn, display_text):
            await asyncio.sleep(0)

        ctx.provider.gate = asyncio.Event()
        first = asyncio.create_task(ctx.session.submit_text("hola"))
        second = asyncio.create_task(ctx.session.submit_text("otra cosa"))
        await asyncio.sleep(0)
        ctx.provider.gate.set()

        results = await asyncio.gather(first, second, return_exceptions=True)

        assert results == [True, False]
        user_turns = [turn.text for turn in ctx.session.transcript if turn.role == Role.USER]
        assert user_turns == ["hola"]
        assert ctx.session.transcript[-1].text == "uno"
        assert len(ctx.provider.calls) == 1

    @pytest.mark.asyncio
    async def test_voice_commit_is_dispatched(self, make_session):
        recognizer = FakeRecognizer()
        ctx = make_session(replies=["Te escucho."], recognizer=recognizer)
        partials = collect(ctx.session, "on_partial_transcript")
        await ctx.session.start()

        assert await ctx.session.start_listening() is True
        assert ctx.session.phase == SessionPhase.LISTENING
        await recognizer.emit_result([RecognitionSegment(transcript="estoy nervioso", is_final=True)], 0)
        await ctx.session.stop_listening()
        await recognizer.emit_end()

        assert partials == [("estoy nervioso",)]
        assert ctx.provider.calls[0][0][-1].text == "estoy nervioso"
        assert ctx.session.phase == SessionPhase.AWAITING_INPUT

    @pytest.mark.asyncio
    async def test_permission_denied_switches_to_typed(self, make_session):
        recognizer = FakeRecognizer()
        ctx = make_session(replies=["Bien."], recognizer=recognizer)
        await ctx.session.start()

        await ctx.session.start_listening()
        await recognizer.emit_error("not-allowed")

        assert ctx.session.phase == SessionPhase.AWAITING_TYPED
        assert await ctx.session.start_listening() is False
        assert await ctx.session.submit_text("escribo entonces") is True
        assert ctx.session.transcript[-1].text == "Bien."


class TestCrisis:
    @pytest.mark.asyncio
    async def test_crisis_is_never_dispatched(self, make_session):
        ctx = make_session(replies=["no debería usarse"])
        crises = collect(ctx.session, "on_crisis")
        await ctx.session.start()

        await ctx.session.submit_text("quiero morir")

        assert ctx.provider.calls == []
        assert ctx.session.phase == SessionPhase.CRISIS_INTERRUPT
        [(title, message)] = crises
        assert title == get_translation("crisis_title", "es")
        assert "0800-00-959" in message
        assert ctx.session.transcript[-1].text == "quiero morir"

    @pytest.mark.asyncio
    async def test_input_blocked_until_dismissed(self, make_session):
        ctx = make_session(replies=["Estoy contigo."])
        await ctx.session.start()
        await ctx.session.submit_text("quiero morir")

        assert await ctx.session.submit_text("hola") is False

        await ctx.session.dismiss_crisis()
        assert ctx.session.phase == SessionPhase.AWAITING_TYPED
        await ctx.session.submit_text("hola")
        assert ctx.session.transcript[-1].text == "Estoy contigo."

    @pytest.mark.asyncio
    async def test_crisis_with_farewell_does_not_auto_terminate(self, make_session):
        ctx = make_session()
        await ctx.session.start()
        await ctx.session.submit_text("quiero morir, adiós")

        assert ctx.session.phase == SessionPhase.CRISIS_INTERRUPT
        assert ctx.session.record is None

    @pytest.mark.asyncio
    async def test_leave_after_crisis_ends_session(self, make_session):
        ctx = make_session(replies=[ProviderError("sin resumen")])
        await ctx.session.start()
        await ctx.session.submit_text("no quiero vivir")

        record = await ctx.session.leave_after_crisis()

        assert ctx.session.phase == SessionPhase.TERMINATED
        assert record is ctx.session.record


class TestBreathing:
    @pytest.mark.asyncio
    async def test_exercise_runs_and_is_recorded(self, make_session):
        ctx = make_session(replies=["Te propongo un ejercicio de respiración. ¿Lo intentamos?"])
        steps = collect(ctx.session, "on_breathing_phase")
        phases = collect(ctx.session, "on_phase_changed")
        await ctx.session.start()

        await ctx.session.submit_text("estoy muy ansioso")

        assert len(steps) == 12
        assert (SessionPhase.BREATHING_EXERCISE,) in phases
        assert ctx.session.transcript[-1].text == get_translation("breathing_follow_up", "es")
        assert ctx.session.phase == SessionPhase.AWAITING_TYPED

        record = await ctx.session.end_session()
        assert record.exercises_completed == ("Respiración 4-7-8",)

    @pytest.mark.asyncio
    async def test_skip_still_counts(self, make_session, fast_config):
        config = fast_config.model_copy(update={"breathing_time_scale": 1.0})
        ctx = make_session(replies=["Hagamos un ejercicio de respiración."], config=config)
        steps = collect(ctx.session, "on_breathing_phase")
        ctx.session.add_event_handler("on_breathing_phase", lambda *args: ctx.session.skip_breathing())
        await ctx.session.start()

        await ctx.session.submit_text("ayúdame a calmarme")

        assert len(steps) == 1
        assert ctx.session.skip_breathing() is False
        record = await ctx.session.end_session()
        assert record.exercises_completed == ("Respiración 4-7-8",)

    @pytest.mark.asyncio
    async def test_default_exercise_when_none_completed(self, make_session):
        ctx = make_session()
        await ctx.session.start()
        record = await ctx.session.end_session()

        assert record.exercises_completed == ("Conversación terapéutica",)


class TestEndSession:
    @pytest.mark.asyncio
    async def test_farewell_plays_fully_before_termination(self, make_session):
        repository = FakeRepository()
        ctx = make_session(replies=[REPLY_WITH_MARKERS], repository=repository)
        narrated_at_ending = []

        @ctx.session.event_handler("on_phase_changed")
        def on_phase(phase):
            if phase == SessionPhase.ENDING:
                narrated_at_ending.extend(ctx.synth.texts("end"))

        await ctx.session.start()
        await ctx.session.submit_text("gracias, nos vemos")

        assert ctx.session.phase == SessionPhase.TERMINATED
        assert "Ha sido un placer acompañarte, cuídate mucho." in narrated_at_ending
        record = ctx.session.record
        assert record.analysis.predominant_emotion == "estrés"
        assert record.analysis.evolution == Evolution.IMPROVED
        assert [task.title for task in record.tasks] == ["Caminar"]
        assert repository.saved == [record]

        # Terminar de nuevo no vuelve a finalizar ni a guardar
        assert await ctx.session.end_session() is record
        assert repository.attempts == 1
        assert len(ctx.provider.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_end_finalizes_once(self, make_session):
        repository = FakeRepository()
        ended = []
        ctx = make_session(repository=repository)
        ctx.session.add_event_handler("on_session_ended", ended.append)
        await ctx.session.start()

        first, second = await asyncio.gather(ctx.session.end_session(), ctx.session.end_session())

        assert first is second
        assert len(ended) == 1
        assert repository.attempts == 1

    @pytest.mark.asyncio
    async def test_failed_retroactive_request_uses_defaults(self, make_session):
        ctx = make_session(replies=["Te escucho, sigue.", ProviderError("caído")])
        await ctx.session.start()
        await ctx.session.submit_text("hoy no dormí bien")

        record = await ctx.session.end_session()

        assert len(ctx.provider.calls) == 2
        assert record.analysis == EmotionalAnalysis.default()
        assert list(record.tasks) == default_tasks("es")
        assert len(record.tasks) == 3

    @pytest.mark.asyncio
    async def test_malformed_retroactive_answer_uses_defaults(self, make_session):
        ctx = make_session(replies=["Te escucho.", "No sé qué decir."])
        await ctx.session.start()
        await ctx.session.submit_text("hola")

        record = await ctx.session.end_session()

        assert record.analysis == EmotionalAnalysis.default()
        assert len(record.tasks) == 3

    @pytest.mark.asyncio
    async def test_retroactive_answer_is_used_but_not_transcribed(self, make_session):
        ctx = make_session(replies=["Te escucho.", REPLY_WITH_MARKERS])
        await ctx.session.start()
        await ctx.session.submit_text("hola")

        record = await ctx.session.end_session()

        assert record.analysis.predominant_emotion == "estrés"
        assert [task.title for task in record.tasks] == ["Caminar"]
        assert all("[ANALISIS_INICIO]" not in turn.text for turn in record.transcript)

    @pytest.mark.asyncio
    async def test_no_retroactive_request_when_blocks_were_extracted(self, make_session):
        ctx = make_session(replies=[REPLY_WITH_MARKERS])
        await ctx.session.start()
        await ctx.session.submit_text("hola")

        await ctx.session.end_session()

        assert len(ctx.provider.calls) == 1

    @pytest.mark.asyncio
    async def test_end_while_dispatching_skips_retroactive_request(self, make_session, wait_until):
        ctx = make_session(replies=["respuesta tardía"])
        ctx.provider.gate = asyncio.Event()
        await ctx.session.start()
        turn = asyncio.create_task(ctx.session.submit_text("hola"))
        await wait_until(lambda: ctx.session.phase == SessionPhase.DISPATCHING)

        record = await ctx.session.end_session()
        ctx.provider.gate.set()
        await turn

        assert len(ctx.provider.calls) == 1
        assert [turn.text for turn in record.transcript][-1] == "hola"
        assert ctx.session.transcript == record.transcript

    @pytest.mark.asyncio
    async def test_end_cancels_narration_and_listening(self, make_session, wait_until):
        recognizer = FakeRecognizer()
        synth = FakeSynthesizer(auto=False)
        ctx = make_session(recognizer=recognizer, synth=synth)
        start = asyncio.create_task(ctx.session.start())
        await wait_until(lambda: synth.speaking)

        await ctx.session.end_session()
        await start

        assert ("cancel",) in synth.events
        assert ctx.session.phase == SessionPhase.TERMINATED

    @pytest.mark.asyncio
    async def test_duration_counter(self, make_session, fast_config, wait_until):
        config = fast_config.model_copy(update={"duration_tick_seconds": 0.01})
        ctx = make_session(config=config)
        await ctx.session.start()

        await wait_until(lambda: ctx.session.duration_minutes >= 2)
        record = await ctx.session.end_session()

        assert record.duration_minutes >= 2
        await asyncio.sleep(0.03)
        assert ctx.session.duration_minutes == record.duration_minutes


class TestHandOff:
    @pytest.mark.asyncio
    async def test_persistence_failure_leaves_record_for_retry(self, make_session):
        repository = FakeRepository(fail_times=1)
        ctx = make_session(replies=[REPLY_WITH_MARKERS], repository=repository)
        await ctx.session.start()
        await ctx.session.submit_text("hola")

        record = await ctx.session.end_session()

        assert ctx.session.handoff_succeeded is False
        assert repository.saved == []
        assert ctx.session.record is record

        assert await ctx.session.hand_off() is True
        assert repository.saved == [record]
        assert ctx.session.handoff_succeeded is True

    @pytest.mark.asyncio
    async def test_without_repository(self, make_session):
        ctx = make_session()
        await ctx.session.start()
        await ctx.session.end_session()

        assert await ctx.session.hand_off() is False
        assert ctx.session.handoff_succeeded is None

import asyncio
from datetime import datetime
from types import SimpleNamespace
from typing import List, Optional

import pytest

from calma.core.config import SessionConfig
from calma.core.errors import MicrophoneUnavailable, PersistenceError, ProviderError
from calma.schemas.speech import Voice
from calma.services.ai_service import CompletionProvider, TurnDispatcher
from calma.services.narration_service import NarrationPlayer
from calma.services.session_repository import SessionRepository
from calma.services.session_service import SessionAggregator
from calma.services.speech import SpeechRecognizer, SpeechSynthesizer, Utterance
from calma.services.transcript_service import TranscriptAcquisition


# ============================================================================
# FAKES DE LOS MOTORES Y COLABORADORES
# ============================================================================

class FakeSynthesizer(SpeechSynthesizer):
    """
    Sintetizador en memoria. Con auto=True cada fragmento termina solo en
    la siguiente vuelta del loop; con auto=False el test llama finish_current().
    """

    def __init__(self, auto: bool = True, fail_on=(), voices: Optional[List[Voice]] = None):
        self.auto = auto
        self.fail_on = set(fail_on)
        self.voices = voices if voices is not None else [
            Voice(name="Helena", lang="es-ES", gender="female"),
            Voice(name="Jorge", lang="es-ES", gender="male"),
            Voice(name="Samantha", lang="en-US", gender="female"),
        ]
        self.events = []
        self.spoken: List[Utterance] = []
        self.current: Optional[Utterance] = None
        self._paused = False

    @property
    def speaking(self) -> bool:
        return self.current is not None

    @property
    def paused(self) -> bool:
        return self._paused

    def get_voices(self):
        return list(self.voices)

    def speak(self, utterance: Utterance) -> None:
        index = len(self.spoken)
        self.spoken.append(utterance)
        self.current = utterance
        asyncio.get_running_loop().call_soon(self._start, utterance, index)

    def _start(self, utterance: Utterance, index: int) -> None:
        if self.current is not utterance:
            return
        self.events.append(("start", utterance.text))
        if utterance.on_start:
            utterance.on_start()
        if index in self.fail_on:
            asyncio.get_running_loop().call_soon(self._fail, utterance, "synthesis-failed")
        elif self.auto:
            asyncio.get_running_loop().call_soon(self.finish_current)

    def _fail(self, utterance: Utterance, code: str) -> None:
        if self.current is not utterance:
            return
        self.current = None
        self.events.append(("error", utterance.text, code))
        utterance.on_error(code)

    def finish_current(self) -> None:
        utterance, self.current = self.current, None
        if utterance is None:
            return
        self.events.append(("end", utterance.text))
        utterance.on_end()

    def cancel(self) -> None:
        self.events.append(("cancel",))
        utterance, self.current = self.current, None
        if utterance is not None and utterance.on_error:
            self.events.append(("error", utterance.text, "canceled"))
            utterance.on_error("canceled")

    def pause(self) -> None:
        self.events.append(("pause",))
        self._paused = True

    def resume(self) -> None:
        self.events.append(("resume",))
        self._paused = False

    def texts(self, kind: str = "start") -> List[str]:
        return [event[1] for event in self.events if event[0] == kind]


class FakeRecognizer(SpeechRecognizer):

    def __init__(self, start_error: Optional[str] = None):
        super().__init__()
        self.start_error = start_error
        self.calls = []

    def start(self) -> None:
        self.calls.append("start")
        if self.start_error:
            raise MicrophoneUnavailable(self.start_error)

    def stop(self) -> None:
        self.calls.append("stop")

    def abort(self) -> None:
        self.calls.append("abort")

    async def emit_result(self, segments, result_index: int = 0) -> None:
        await self._call_event_handler("on_result", segments, result_index)

    async def emit_error(self, code: str) -> None:
        await self._call_event_handler("on_error", code)

    async def emit_end(self) -> None:
        await self._call_event_handler("on_end")


class FakeCompletionProvider(CompletionProvider):
    """Devuelve las respuestas en orden; una excepción en la lista se lanza"""

    def __init__(self, replies=()):
        self.replies = list(replies)
        self.calls = []
        self.gate: Optional[asyncio.Event] = None

    async def complete(self, history, system_prompt):
        self.calls.append((tuple(history), system_prompt))
        if self.gate is not None:
            await self.gate.wait()
        if not self.replies:
            raise ProviderError("sin respuestas configuradas")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeRepository(SessionRepository):

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.attempts = 0
        self.saved = []

    async def save(self, record) -> None:
        self.attempts += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise PersistenceError("base de datos caída")
        self.saved.append(record)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def fast_config():
    """Sin pausas ni demoras: los tests corren sobre el loop sin esperar"""
    return SessionConfig(
        chunk_pause_seconds=0,
        chunk_error_pause_seconds=0,
        keepalive_interval_seconds=0,
        greeting_delay_seconds=0,
        breathing_delay_seconds=0,
        duration_tick_seconds=0,
        breathing_time_scale=0,
    )


@pytest.fixture
def synth():
    return FakeSynthesizer()


@pytest.fixture
def held_synth():
    return FakeSynthesizer(auto=False)


@pytest.fixture
def recognizer():
    return FakeRecognizer()


@pytest.fixture
def wait_until():
    async def _wait_until(predicate, timeout: float = 1.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("la condición no se cumplió a tiempo")
            await asyncio.sleep(0)

    return _wait_until


@pytest.fixture
def make_session(fast_config):
    def factory(
        replies=(),
        synth=None,
        recognizer=None,
        repository=None,
        profile=None,
        config=None,
        now=datetime(2024, 5, 1, 9, 30),
    ):
        config = config or fast_config
        synth = synth or FakeSynthesizer()
        provider = FakeCompletionProvider(replies)
        dispatcher = TurnDispatcher(provider, "system prompt", config.language)
        acquisition = TranscriptAcquisition(recognizer, config.voice.language_tag)
        session = SessionAggregator(
            config,
            dispatcher,
            NarrationPlayer(synth, config),
            acquisition,
            repository=repository,
            profile=profile,
            clock=lambda: now,
        )
        return SimpleNamespace(
            session=session,
            provider=provider,
            dispatcher=dispatcher,
            synth=synth,
            recognizer=recognizer,
            acquisition=acquisition,
            repository=repository,
        )

    return factory

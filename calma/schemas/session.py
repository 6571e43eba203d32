from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

# ============================================================================
# ENUMS
# ============================================================================

class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Evolution(str, Enum):
    """Cómo cambió la emoción predominante durante la sesión"""
    IMPROVED = "improved"
    WORSENED = "worsened"
    UNCHANGED = "unchanged"


class TaskFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    ONE_TIME = "one-time"


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"

    @classmethod
    def from_hour(cls, hour: int) -> "TimeOfDay":
        if hour < 12:
            return cls.MORNING
        if hour < 18:
            return cls.AFTERNOON
        return cls.EVENING


class SessionPhase(str, Enum):
    """
    Fase única de la sesión. Toda la UI (botones habilitados, textos de
    estado) se deriva de aquí en lugar de banderas independientes.
    """
    IDLE = "idle"
    GREETING = "greeting"
    AWAITING_INPUT = "awaiting_input"
    LISTENING = "listening"
    AWAITING_TYPED = "awaiting_typed"
    DISPATCHING = "dispatching"
    BREATHING_EXERCISE = "breathing_exercise"
    CRISIS_INTERRUPT = "crisis_interrupt"
    ENDING = "ending"
    TERMINATED = "terminated"


# ============================================================================
# TURNOS Y BLOQUES EXTRAÍDOS
# ============================================================================

class ConversationTurn(BaseModel):
    """Un enunciado del usuario o del asistente. Inmutable una vez agregado."""
    model_config = ConfigDict(frozen=True)

    role: Role
    text: str


class EmotionShare(BaseModel):
    model_config = ConfigDict(frozen=True)

    emotion: str
    percentage: int = 0


class EmotionalAnalysis(BaseModel):
    """
    Análisis emocional de la sesión.
    Los porcentajes son orientativos (deberían sumar ~100, no se valida).
    """
    model_config = ConfigDict(frozen=True)

    predominant_emotion: str
    average_intensity: int = Field(..., ge=1, le=10)
    evolution: Evolution = Evolution.UNCHANGED
    top_emotions: Tuple[EmotionShare, ...] = Field(default=(), max_length=4)

    @classmethod
    def default(cls) -> "EmotionalAnalysis":
        return cls(
            predominant_emotion="neutral",
            average_intensity=5,
            evolution=Evolution.UNCHANGED,
            top_emotions=(EmotionShare(emotion="neutral", percentage=100),),
        )


class ProposedTask(BaseModel):
    """Tarea gamificada propuesta por el asistente al cerrar la sesión"""
    model_config = ConfigDict(frozen=True)

    title: str
    description: str
    frequency: TaskFrequency = TaskFrequency.ONE_TIME
    points: int = 50


# ============================================================================
# REGISTRO DE SESIÓN
# ============================================================================

class SessionRecord(BaseModel):
    """
    Registro final de una sesión. Se produce una sola vez al finalizar y
    es de solo lectura desde ese momento.
    """
    model_config = ConfigDict(frozen=True)

    id: UUID
    started_at: datetime
    time_of_day: TimeOfDay
    duration_minutes: int = 0
    analysis: EmotionalAnalysis
    exercises_completed: Tuple[str, ...] = ()
    transcript: Tuple[ConversationTurn, ...] = ()
    tasks: Tuple[ProposedTask, ...] = ()


class SessionDraft(BaseModel):
    """
    Estado mutable de la sesión en curso. Pertenece exclusivamente al
    agregador hasta que se congela con finalize().
    """
    id: UUID = Field(default_factory=uuid4)
    started_at: datetime
    time_of_day: TimeOfDay
    duration_minutes: int = 0
    analysis: EmotionalAnalysis = Field(default_factory=EmotionalAnalysis.default)
    exercises_completed: List[str] = Field(default_factory=list)
    transcript: List[ConversationTurn] = Field(default_factory=list)
    tasks: List[ProposedTask] = Field(default_factory=list)

    @classmethod
    def start(cls, now: datetime) -> "SessionDraft":
        return cls(started_at=now, time_of_day=TimeOfDay.from_hour(now.hour))

    def append_turn(self, role: Role, text: str) -> ConversationTurn:
        turn = ConversationTurn(role=role, text=text)
        self.transcript.append(turn)
        return turn

    def finalize(
        self,
        analysis: Optional[EmotionalAnalysis],
        tasks: List[ProposedTask],
        fallback_exercise: str,
    ) -> SessionRecord:
        return SessionRecord(
            id=self.id,
            started_at=self.started_at,
            time_of_day=self.time_of_day,
            duration_minutes=self.duration_minutes,
            analysis=analysis or self.analysis,
            exercises_completed=tuple(self.exercises_completed or [fallback_exercise]),
            transcript=tuple(self.transcript),
            tasks=tuple(tasks),
        )

# calma/services/session_repository.py

"""
Colaborador de persistencia: recibe el registro congelado una sola vez al
terminar la sesión. Si falla, el registro queda intacto para que quien
llama reintente; aquí no se reintenta. Guardar es idempotente por ID.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import NAMESPACE_URL, uuid5

from supabase import Client

from calma.core.errors import PersistenceError
from calma.core.log import log_structured
from calma.core.supabase_client import get_supabase
from calma.schemas.session import Evolution, SessionRecord, TaskFrequency, TimeOfDay

logger = logging.getLogger(__name__)

TASK_DUE_DAYS = 7

# Valores de las columnas de las tablas sessions / tasks
MOMENTO_DIA = {
    TimeOfDay.MORNING: "manana",
    TimeOfDay.AFTERNOON: "tarde",
    TimeOfDay.EVENING: "noche",
}
EVOLUCION = {
    Evolution.IMPROVED: "mejoro",
    Evolution.WORSENED: "empeoro",
    Evolution.UNCHANGED: "se_mantuvo",
}
FRECUENCIA = {
    TaskFrequency.DAILY: "diaria",
    TaskFrequency.WEEKLY: "semanal",
    TaskFrequency.ONE_TIME: "única",
}


def build_session_payload(record: SessionRecord, user_id: str) -> Dict:
    analysis = record.analysis
    return {
        "id": str(record.id),
        "user_id": user_id,
        "fecha_hora": record.started_at.isoformat(),
        "momento_dia": MOMENTO_DIA[record.time_of_day],
        "duracion_minutos": record.duration_minutes,
        "emocion_predominante": analysis.predominant_emotion,
        "intensidad_promedio": analysis.average_intensity,
        "evolucion": EVOLUCION[analysis.evolution],
        "top_emociones": [
            {"emocion": share.emotion, "porcentaje": share.percentage}
            for share in analysis.top_emotions
        ],
        "ejercicios_realizados": list(record.exercises_completed),
        "conversacion": [
            {"role": turn.role.value, "text": turn.text}
            for turn in record.transcript
        ],
    }


def task_row_id(record: SessionRecord, index: int) -> str:
    """ID estable de la tarea: reintentar el guardado no duplica filas"""
    return str(uuid5(NAMESPACE_URL, f"calma:{record.id}:tarea:{index}"))


def build_task_payloads(record: SessionRecord, user_id: str, now: Optional[datetime] = None) -> List[Dict]:
    now = now or datetime.now()
    due = now + timedelta(days=TASK_DUE_DAYS)
    return [
        {
            "id": task_row_id(record, index),
            "user_id": user_id,
            "sesion_origen": str(record.id),
            "titulo": task.title,
            "descripcion": task.description,
            "frecuencia": FRECUENCIA[task.frequency],
            "puntos": task.points,
            "estado": "pendiente",
            "fecha_asignada": now.isoformat(),
            "fecha_vencimiento": due.isoformat(),
        }
        for index, task in enumerate(record.tasks)
    ]


class SessionRepository(ABC):

    @abstractmethod
    async def save(self, record: SessionRecord) -> None:
        """
        Raises:
            PersistenceError: no se pudo guardar el registro.
        """


class SupabaseSessionRepository(SessionRepository):
    """Guarda la sesión y sus tareas en las tablas sessions y tasks"""

    def __init__(self, user_id: str, client: Optional[Client] = None):
        self.user_id = user_id
        self.supabase = client or get_supabase()

    async def save(self, record: SessionRecord) -> None:
        try:
            # upsert por ID: un reintento tras un guardado parcial no duplica filas
            self.supabase.table("sessions").upsert(build_session_payload(record, self.user_id)).execute()
            tasks = build_task_payloads(record, self.user_id)
            if tasks:
                self.supabase.table("tasks").upsert(tasks).execute()
        except Exception as e:
            log_structured(
                logger, "error", "session_save_failed",
                session_id=str(record.id), error=str(e),
            )
            raise PersistenceError(f"No se pudo guardar la sesión {record.id}: {e}") from e

        log_structured(
            logger, "info", "session_saved",
            session_id=str(record.id), tasks=len(record.tasks),
        )

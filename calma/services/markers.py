# calma/services/markers.py

"""
Extracción de bloques estructurados embebidos en la respuesta del modelo.

El system prompt pide al modelo dos tipos de bloque:

    [ANALISIS_INICIO]
    Emocion_Predominante: ansiedad
    Intensidad: 7
    Evolucion: mejoró
    Top_Emociones: ansiedad:60, calma:40
    [ANALISIS_FIN]

    [TAREA_INICIO]
    Titulo: ...
    Descripcion: ...
    Frecuencia: diaria
    Puntos: 50
    [TAREA_FIN]

Es una gramática "best effort" sobre texto libre: los campos faltantes
toman un valor por defecto tipado y un bloque sin los campos mínimos se
ignora. La extracción siempre lee el texto crudo; strip_markers() solo se
usa para narrar y mostrar.
"""

import re
import unicodedata
from typing import List, Optional, Sequence

from calma.core.i18n import BREATHING_CUE_PAIRS, get_phrases
from calma.schemas.session import (
    ConversationTurn,
    EmotionShare,
    EmotionalAnalysis,
    Evolution,
    ProposedTask,
    Role,
    TaskFrequency,
)

ANALYSIS_BLOCK_RE = re.compile(r"\[ANALISIS_INICIO\](.*?)\[ANALISIS_FIN\]", re.IGNORECASE | re.DOTALL)
TASK_BLOCK_RE = re.compile(r"\[TAREA_INICIO\](.*?)\[TAREA_FIN\]", re.IGNORECASE | re.DOTALL)
DANGLING_BLOCK_RE = re.compile(r"\[(?:ANALISIS|TAREA)_INICIO\].*\Z", re.IGNORECASE | re.DOTALL)
STRAY_TAG_RE = re.compile(r"\[(?:ANALISIS|TAREA)_(?:INICIO|FIN)\]", re.IGNORECASE)

MAX_TOP_EMOTIONS = 4
DEFAULT_TASK_POINTS = 50


def _field_re(name: str) -> re.Pattern:
    # Tolera negritas markdown ("**Intensidad:** 7") y corchetes del ejemplo
    return re.compile(rf"{name}\**\s*:\s*\**\s*(.+?)\s*(?:\n|$)", re.IGNORECASE)


EMOTION_RE = _field_re(r"Emoci[oó]n_Predominante")
INTENSITY_RE = re.compile(r"Intensidad\**\s*:\s*\**\s*\[?\s*(\d+)", re.IGNORECASE)
EVOLUTION_RE = _field_re(r"Evoluci[oó]n")
TOP_EMOTIONS_RE = _field_re(r"Top_Emociones")

TITLE_RE = _field_re(r"T[ií]tulo")
DESCRIPTION_RE = re.compile(
    r"Descripci[oó]n\**\s*:\s*\**\s*(.+?)\s*(?=\n\s*\**\s*(?:Frecuencia|Puntos)\b|\Z)",
    re.IGNORECASE | re.DOTALL,
)
FREQUENCY_RE = _field_re(r"Frecuencia")
POINTS_RE = re.compile(r"Puntos\**\s*:\s*\**\s*\[?\s*(\d+)", re.IGNORECASE)

# Etiquetas en español que usa la gramática del prompt
EVOLUTION_LABELS = {
    Evolution.IMPROVED: "mejoró",
    Evolution.WORSENED: "empeoró",
    Evolution.UNCHANGED: "se mantuvo",
}
FREQUENCY_LABELS = {
    TaskFrequency.DAILY: "diaria",
    TaskFrequency.WEEKLY: "semanal",
    TaskFrequency.ONE_TIME: "única",
}


PLACEHOLDER_RE = re.compile(r"^\[([^\[\]]*)\]$")


def _fold(text: str) -> str:
    """minúsculas y sin tildes, para comparar tokens del modelo"""
    decomposed = unicodedata.normalize("NFKD", text.strip().lower())
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def _clean(value: str) -> str:
    """Quita la negrita markdown que envuelve el valor y los corchetes de un [placeholder] completo"""
    value = re.sub(r"^\*\*|\*\*$", "", value.strip()).strip()
    placeholder = PLACEHOLDER_RE.match(value)
    return placeholder.group(1).strip() if placeholder else value


def normalize_evolution(token: Optional[str]) -> Evolution:
    value = _fold(token or "")
    if value.startswith(("mejor", "improv")):
        return Evolution.IMPROVED
    if value.startswith(("empeor", "wors")):
        return Evolution.WORSENED
    return Evolution.UNCHANGED


def normalize_frequency(token: Optional[str]) -> TaskFrequency:
    value = _fold(token or "")
    if value.startswith(("diari", "daily", "cada dia", "every day")):
        return TaskFrequency.DAILY
    if value.startswith(("seman", "week")):
        return TaskFrequency.WEEKLY
    return TaskFrequency.ONE_TIME


# ============================================================================
# ANÁLISIS EMOCIONAL
# ============================================================================

def _parse_top_emotions(raw: str) -> List[EmotionShare]:
    shares = []
    for pair in _clean(raw).split(","):
        emotion, _, percentage = pair.partition(":")
        emotion = _clean(emotion)
        if not emotion:
            continue
        digits = re.search(r"\d+", percentage)
        shares.append(EmotionShare(emotion=emotion, percentage=int(digits.group()) if digits else 0))
    return shares


def parse_analysis(text: str) -> Optional[EmotionalAnalysis]:
    """Primer bloque de análisis bien formado de un mensaje, o None"""
    for match in ANALYSIS_BLOCK_RE.finditer(text or ""):
        content = match.group(1)
        emotion_match = EMOTION_RE.search(content)
        intensity_match = INTENSITY_RE.search(content)
        if not emotion_match or not intensity_match:
            continue

        predominant = _clean(emotion_match.group(1))
        if not predominant:
            continue

        evolution_match = EVOLUTION_RE.search(content)
        top_match = TOP_EMOTIONS_RE.search(content)
        top_emotions = _parse_top_emotions(top_match.group(1)) if top_match else []
        if not top_emotions:
            top_emotions = [EmotionShare(emotion=predominant, percentage=100)]

        return EmotionalAnalysis(
            predominant_emotion=predominant,
            average_intensity=max(1, min(10, int(intensity_match.group(1)))),
            evolution=normalize_evolution(evolution_match.group(1) if evolution_match else None),
            top_emotions=tuple(top_emotions[:MAX_TOP_EMOTIONS]),
        )
    return None


def extract_analysis(transcript: Sequence[ConversationTurn]) -> Optional[EmotionalAnalysis]:
    """
    Busca desde el mensaje del asistente más reciente hacia atrás y
    devuelve el primer análisis bien formado.
    """
    for turn in reversed(transcript):
        if turn.role != Role.ASSISTANT:
            continue
        analysis = parse_analysis(turn.text)
        if analysis is not None:
            return analysis
    return None


# ============================================================================
# TAREAS
# ============================================================================

def parse_tasks(text: str) -> List[ProposedTask]:
    """Todas las tareas bien formadas de un mensaje (puede haber varias)"""
    tasks = []
    for match in TASK_BLOCK_RE.finditer(text or ""):
        content = match.group(1)
        title_match = TITLE_RE.search(content)
        description_match = DESCRIPTION_RE.search(content)
        if not title_match or not description_match:
            continue

        title = _clean(title_match.group(1))
        description = re.sub(r"\s*\n\s*", " ", _clean(description_match.group(1)))
        if not title or not description:
            continue

        frequency_match = FREQUENCY_RE.search(content)
        points_match = POINTS_RE.search(content)
        tasks.append(ProposedTask(
            title=title,
            description=description,
            frequency=normalize_frequency(frequency_match.group(1) if frequency_match else None),
            points=int(points_match.group(1)) if points_match else DEFAULT_TASK_POINTS,
        ))
    return tasks


def extract_tasks(transcript: Sequence[ConversationTurn]) -> List[ProposedTask]:
    """
    Igual que extract_analysis pero para tareas: se queda con el mensaje
    más reciente que tenga al menos una tarea bien formada.
    """
    for turn in reversed(transcript):
        if turn.role != Role.ASSISTANT:
            continue
        tasks = parse_tasks(turn.text)
        if tasks:
            return tasks
    return []


# ============================================================================
# LIMPIEZA Y RENDER
# ============================================================================

def _strip_once(text: str) -> str:
    text = ANALYSIS_BLOCK_RE.sub("", text)
    text = TASK_BLOCK_RE.sub("", text)
    text = DANGLING_BLOCK_RE.sub("", text)
    text = STRAY_TAG_RE.sub("", text)
    text = re.sub(r"[ \t]+\n", "\n", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def strip_markers(text: str) -> str:
    """
    Quita bloques de análisis y tareas, completos o sin cerrar, y etiquetas
    sueltas. Se aplica hasta punto fijo, así que es idempotente.
    """
    current = text or ""
    while True:
        stripped = _strip_once(current)
        if stripped == current:
            return stripped
        current = stripped


def render_analysis_block(analysis: EmotionalAnalysis) -> str:
    top = ", ".join(f"{share.emotion}:{share.percentage}" for share in analysis.top_emotions)
    return (
        "[ANALISIS_INICIO]\n"
        f"Emocion_Predominante: {analysis.predominant_emotion}\n"
        f"Intensidad: {analysis.average_intensity}\n"
        f"Evolucion: {EVOLUTION_LABELS[analysis.evolution]}\n"
        f"Top_Emociones: {top}\n"
        "[ANALISIS_FIN]"
    )


def render_task_block(task: ProposedTask) -> str:
    """
    Bloque de tarea tal como lo emite el modelo. Un valor que empieza con
    '*', termina en '**' o va entero entre corchetes no vuelve igual
    por parse_tasks (se lee como negrita o como [placeholder]).
    """
    return (
        "[TAREA_INICIO]\n"
        f"Titulo: {task.title}\n"
        f"Descripcion: {task.description}\n"
        f"Frecuencia: {FREQUENCY_LABELS[task.frequency]}\n"
        f"Puntos: {task.points}\n"
        "[TAREA_FIN]"
    )


def suggests_breathing_exercise(text: str, language: str = "es") -> bool:
    """Heurística: ¿el asistente está proponiendo un ejercicio de respiración?"""
    lowered = strip_markers(text).lower()
    if any(cue in lowered for cue in get_phrases("breathing_cues", language)):
        return True
    return any(
        all(word in lowered for word in pair)
        for pair in BREATHING_CUE_PAIRS.get(language, BREATHING_CUE_PAIRS["es"])
    )

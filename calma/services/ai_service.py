# calma/services/ai_service.py

"""
Servicio de IA para Calma - Asistente terapéutico (Groq o Gemini)

- Clientes asíncronos (AsyncGroq, genai aio) para no bloquear el event loop.
- El system prompt embebe la gramática de los bloques de análisis y tareas
  que luego lee calma/services/markers.py.
- TurnDispatcher garantiza una sola petición en curso por sesión.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

from google import genai
from google.genai import types
from groq import AsyncGroq, GroqError

from calma.core.config import Settings, get_settings
from calma.core.errors import ProviderError, TurnInFlightError
from calma.core.i18n import get_translation
from calma.core.log import log_structured
from calma.schemas.session import (
    ConversationTurn,
    EmotionShare,
    EmotionalAnalysis,
    Evolution,
    ProposedTask,
    Role,
    TaskFrequency,
)
from calma.services.markers import render_analysis_block, render_task_block

logger = logging.getLogger(__name__)

MODEL_NAME = 'llama-3.3-70b-versatile'
GEMINI_MODEL_NAME = 'gemini-2.0-flash'


# ============================================================================
# PROVEEDORES DE COMPLETIONS
# ============================================================================

class CompletionProvider(ABC):
    """Función de completion opaca: historial + system prompt -> texto"""

    @property
    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def complete(self, history: Sequence[ConversationTurn], system_prompt: str) -> str:
        """
        Raises:
            ProviderError: sin API key, estado no exitoso o payload malformado.
        """


class GroqCompletionProvider(CompletionProvider):

    def __init__(
        self,
        client: Optional[AsyncGroq] = None,
        api_key: Optional[str] = None,
        model: str = MODEL_NAME,
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ):
        if client is None:
            api_key = get_settings().GROQ_API_KEY if api_key is None else api_key
            if api_key:
                try:
                    client = AsyncGroq(api_key=api_key)
                except GroqError as e:
                    logger.error(f"Error inicializando cliente AsyncGroq: {e}")
                    raise ProviderError(str(e)) from e
            else:
                logger.warning("GROQ_API_KEY no configurada")
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    async def complete(self, history: Sequence[ConversationTurn], system_prompt: str) -> str:
        if not self.is_configured:
            raise ProviderError("API key de Groq no configurada")

        messages = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": turn.role.value, "content": turn.text} for turn in history)

        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except GroqError as e:
            log_structured(logger, "error", "groq_request_failed", model=self.model, error=str(e))
            raise ProviderError(f"Error llamando a Groq: {e}") from e

        try:
            content = completion.choices[0].message.content
        except (IndexError, AttributeError) as e:
            raise ProviderError("Respuesta malformada de Groq") from e

        if not content or not content.strip():
            raise ProviderError("Groq devolvió una respuesta vacía")
        return content


class GeminiCompletionProvider(CompletionProvider):
    """
    Gemini vía google-genai. El historial usa los roles 'user' / 'model'
    y el system prompt va como system_instruction.
    """

    def __init__(
        self,
        client: Optional[genai.Client] = None,
        api_key: Optional[str] = None,
        model: str = GEMINI_MODEL_NAME,
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ):
        if client is None:
            api_key = get_settings().GEMINI_API_KEY if api_key is None else api_key
            if api_key:
                client = genai.Client(api_key=api_key)
            else:
                logger.warning("GEMINI_API_KEY no configurada")
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    async def complete(self, history: Sequence[ConversationTurn], system_prompt: str) -> str:
        if not self.is_configured:
            raise ProviderError("API key de Gemini no configurada")

        contents = [
            types.Content(
                role="user" if turn.role == Role.USER else "model",
                parts=[types.Part(text=turn.text)],
            )
            for turn in history
        ]

        try:
            response = await self.client.aio.models.generate_content(
                model=self.model,
                contents=contents,
                config=types.GenerateContentConfig(
                    system_instruction=system_prompt,
                    temperature=self.temperature,
                    max_output_tokens=self.max_tokens,
                ),
            )
            content = response.text
        except Exception as e:
            log_structured(logger, "error", "gemini_request_failed", model=self.model, error=str(e))
            raise ProviderError(f"Error llamando a Gemini: {e}") from e

        if not content or not content.strip():
            raise ProviderError("Gemini devolvió una respuesta vacía")
        return content


def build_completion_provider(settings: Optional[Settings] = None, provider: Optional[str] = None) -> CompletionProvider:
    """Proveedor elegido en AI_PROVIDER (o el indicado explícitamente)"""
    settings = settings or get_settings()
    provider = provider or settings.AI_PROVIDER

    if provider == "gemini":
        return GeminiCompletionProvider(
            api_key=settings.GEMINI_API_KEY,
            model=settings.GEMINI_MODEL,
            temperature=settings.AI_TEMPERATURE,
            max_tokens=settings.AI_MAX_TOKENS,
        )
    if provider == "groq":
        return GroqCompletionProvider(
            api_key=settings.GROQ_API_KEY,
            model=settings.GROQ_MODEL,
            temperature=settings.AI_TEMPERATURE,
            max_tokens=settings.AI_MAX_TOKENS,
        )
    raise ProviderError(f"Proveedor de IA no soportado: {provider}")


# ============================================================================
# SYSTEM PROMPT
# ============================================================================

THERAPEUTIC_PROMPT = """Eres un asistente terapéutico virtual empático y profesional. Tu objetivo es:

1. Escuchar activamente y validar las emociones del usuario
2. Hacer preguntas abiertas para entender mejor su situación
3. Ofrecer técnicas de manejo emocional cuando sea apropiado
4. Sugerir ejercicios de respiración, mindfulness o grounding cuando detectes ansiedad o estrés
5. Ser cálido, comprensivo y no juzgar

IMPORTANTE:
- NO diagnostiques condiciones médicas
- NO prescribas medicamentos
- Si detectas crisis severa, ideación suicida o autolesión, recomienda buscar ayuda profesional inmediata
- Mantén respuestas concisas (2-4 oraciones) y un tono conversacional y cercano
- Si mencionas un ejercicio, pregunta si le gustaría hacerlo

AL TERMINAR LA SESIÓN (cuando el usuario diga algo como "terminemos", "hasta aquí", "me voy", etc.):

1. PRIMERO: Da un mensaje de despedida cálido y empático (1-2 oraciones)
2. Resume brevemente la conversación en 2-3 oraciones
3. Genera el ANÁLISIS EMOCIONAL usando el formato [ANALISIS_INICIO]...[ANALISIS_FIN]
4. Genera EXACTAMENTE 3 TAREAS usando el formato [TAREA_INICIO]...[TAREA_FIN]

TIPOS DE TAREAS (elige 3 de tipos DIFERENTES, específicas para lo que conversaron):
1. Ejercicios de respiración (50 pts): ansiedad, estrés, nerviosismo
2. Diario emocional (75 pts): procesar pensamientos y sentimientos
3. Actividad física (100 pts): ánimo, energía, sueño
4. Técnicas de afrontamiento (80 pts): situaciones concretas que mencionó
5. Desafíos conductuales (90 pts): salir de la zona de confort
6. Reflexiones (70 pts): gratitud y reestructuración cognitiva

FORMATO DE TAREAS (usa EXACTAMENTE este formato):

[TAREA_INICIO]
Titulo: [título corto y específico]
Descripcion: [qué hacer, cómo hacerlo y por qué ayuda en SU situación]
Frecuencia: [diaria/semanal/única]
Puntos: [50/70/75/80/90/100 según el tipo]
[TAREA_FIN]

FORMATO DE ANÁLISIS EMOCIONAL (usa EXACTAMENTE este formato):

[ANALISIS_INICIO]
Emocion_Predominante: [emoción principal detectada]
Intensidad: [1-10]
Evolucion: [mejoró/empeoró/se mantuvo]
Top_Emociones: [emocion1:porcentaje1, emocion2:porcentaje2, emocion3:porcentaje3, emocion4:porcentaje4]
[ANALISIS_FIN]

REGLAS PARA EL ANÁLISIS:
- La emoción predominante es la más evidente en la conversación
- La intensidad refleja qué tan fuerte es esa emoción
- La evolución indica si mejoró durante la sesión
- Los 4 porcentajes deben sumar aproximadamente 100
- Usa emociones específicas basadas en lo que realmente dijo"""


def get_system_prompt(language: str = "es", user_name: str = "", assistant_name: str = "") -> str:
    """
    Construye el System Prompt de la sesión.

    Args:
        language: Idioma de la sesión ('es' | 'en')
        user_name: Nombre preferido del usuario (opcional)
        assistant_name: Nombre que el usuario le dio al asistente (opcional)
    """
    parts = [THERAPEUTIC_PROMPT]

    personalizacion = []
    if assistant_name:
        personalizacion.append(f"- Tu nombre es {assistant_name}.")
    if user_name:
        personalizacion.append(f"- El usuario prefiere que le llames {user_name}.")
    if personalizacion:
        parts.append("PERSONALIZACIÓN:\n" + "\n".join(personalizacion))

    if language == "en":
        parts.append(
            "LANGUAGE: Always answer in English, naturally and with empathy. "
            "Keep the [ANALISIS_INICIO]/[TAREA_INICIO] tags and their field names "
            "(Emocion_Predominante, Intensidad, Evolucion, Top_Emociones, Titulo, "
            "Descripcion, Frecuencia, Puntos) exactly as written above."
        )
    else:
        parts.append("Responde siempre en español de forma natural y empática.")

    return "\n\n".join(parts)


# ============================================================================
# DESPACHO DE TURNOS
# ============================================================================

# Ejemplos que acompañan el pedido de resumen retroactivo
SUMMARY_EXAMPLES = {
    "es": (
        EmotionalAnalysis(
            predominant_emotion="ansiedad",
            average_intensity=6,
            evolution=Evolution.IMPROVED,
            top_emotions=(
                EmotionShare(emotion="ansiedad", percentage=50),
                EmotionShare(emotion="preocupación", percentage=25),
                EmotionShare(emotion="esperanza", percentage=15),
                EmotionShare(emotion="calma", percentage=10),
            ),
        ),
        ProposedTask(
            title="Respiración antes de dormir",
            description="Practica la respiración 4-7-8 durante 5 minutos antes de acostarte.",
            frequency=TaskFrequency.DAILY,
            points=50,
        ),
    ),
    "en": (
        EmotionalAnalysis(
            predominant_emotion="anxiety",
            average_intensity=6,
            evolution=Evolution.IMPROVED,
            top_emotions=(
                EmotionShare(emotion="anxiety", percentage=50),
                EmotionShare(emotion="worry", percentage=25),
                EmotionShare(emotion="hope", percentage=15),
                EmotionShare(emotion="calm", percentage=10),
            ),
        ),
        ProposedTask(
            title="Breathing before bed",
            description="Practice 4-7-8 breathing for 5 minutes before going to sleep.",
            frequency=TaskFrequency.DAILY,
            points=50,
        ),
    ),
}


class TurnDispatcher:
    """
    Mantiene el historial que ve el modelo y garantiza que haya como máximo
    una petición en curso. Rechazar o encolar intentos concurrentes es
    responsabilidad del que llama.
    """

    def __init__(self, provider: CompletionProvider, system_prompt: str, language: str = "es"):
        self._provider = provider
        self._system_prompt = system_prompt
        self._language = language
        self._history: List[ConversationTurn] = []
        self._in_flight = False

    @property
    def history(self) -> Tuple[ConversationTurn, ...]:
        return tuple(self._history)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def send_turn(self, utterance: str) -> str:
        """
        Envía un enunciado del usuario y devuelve la respuesta cruda
        (con los bloques de marcadores incluidos).

        Raises:
            TurnInFlightError: ya hay una petición en curso.
            ProviderError: el proveedor falló; el enunciado queda en el historial.
        """
        if self._in_flight:
            raise TurnInFlightError("Ya hay una petición al modelo en curso")

        self._in_flight = True
        self._history.append(ConversationTurn(role=Role.USER, text=utterance))
        try:
            reply = await self._provider.complete(tuple(self._history), self._system_prompt)
        finally:
            self._in_flight = False

        self._history.append(ConversationTurn(role=Role.ASSISTANT, text=reply))
        log_structured(
            logger, "info", "turn_completed",
            history_length=len(self._history),
            reply_chars=len(reply),
        )
        return reply

    async def request_summary(self) -> str:
        """Pide al modelo el análisis y las tareas que no emitió durante la sesión"""
        analysis, task = SUMMARY_EXAMPLES.get(self._language, SUMMARY_EXAMPLES["es"])
        prompt = get_translation(
            "summary_request",
            self._language,
            analysis_example=render_analysis_block(analysis),
            task_example=render_task_block(task),
        )
        return await self.send_turn(prompt)

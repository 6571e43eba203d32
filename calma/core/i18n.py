from typing import Dict, List, Optional

# Diccionario de traducciones simple / Simple translation dictionary
# Estructura: { "KEY": { "es": "...", "en": "..." } }
TRANSLATIONS = {
    "greeting": {
        "es": "Hola{name}, ¿cómo te sientes hoy? Estoy aquí para escucharte.",
        "en": "Hi{name}, how are you feeling today? I'm here to listen to you.",
    },
    "greeting_with_assistant": {
        "es": "Hola{name}, soy {assistant_name}. ¿Cómo te sientes hoy? Estoy aquí para escucharte.",
        "en": "Hi{name}, I'm {assistant_name}. How are you feeling today? I'm here to listen to you.",
    },
    "fallback_reply": {
        "es": "Te escucho y entiendo lo que compartes conmigo. ¿Puedes contarme más sobre eso?",
        "en": "I hear you and I understand what you're sharing with me. Can you tell me more about it?",
    },
    "breathing_follow_up": {
        "es": "¡Muy bien! Has completado el ejercicio de respiración. ¿Cómo te sientes ahora? ¿Notas algún cambio en tu cuerpo o tu mente?",
        "en": "Well done! You've completed the breathing exercise. How do you feel now? Do you notice any change in your body or mind?",
    },
    "breathing_exercise_name": {
        "es": "Respiración 4-7-8",
        "en": "4-7-8 Breathing",
    },
    "default_exercise": {
        "es": "Conversación terapéutica",
        "en": "Therapeutic conversation",
    },
    "crisis_title": {
        "es": "🆘 AYUDA PROFESIONAL NECESARIA",
        "en": "🆘 PROFESSIONAL HELP NEEDED",
    },
    "crisis_message": {
        "es": (
            "He notado que podrías estar en una situación que requiere atención profesional inmediata. "
            "Por favor, contacta a: Emergencias 105 / 106 / 107, Línea de Crisis 0800-00-959 "
            "(Prevención del Suicidio - Perú) o el centro de salud más cercano. "
            "💚 Tu bienestar es lo más importante."
        ),
        "en": (
            "I've noticed you might be in a situation that needs immediate professional attention. "
            "Please contact your local emergency number, a suicide prevention hotline "
            "or your nearest health center. 💚 Your wellbeing is what matters most."
        ),
    },
    "summary_request": {
        "es": (
            "La sesión ha terminado. Sin despedirte de nuevo, genera AHORA el análisis emocional "
            "de toda la conversación y EXACTAMENTE 3 tareas, usando estrictamente estos formatos:\n\n"
            "{analysis_example}\n\n{task_example}"
        ),
        "en": (
            "The session is over. Without saying goodbye again, generate NOW the emotional analysis "
            "of the whole conversation and EXACTLY 3 tasks, strictly using these formats "
            "(keep the tags and field names exactly as shown):\n\n"
            "{analysis_example}\n\n{task_example}"
        ),
    },
    # Terminal
    "cli_intro": {
        "es": "Escribe tu mensaje y presiona Enter. Escribe /fin para terminar la sesión.",
        "en": "Type your message and press Enter. Type /end to finish the session.",
    },
    "cli_crisis_continue": {
        "es": "¿Quieres continuar con la sesión? (s/n) ",
        "en": "Do you want to continue the session? (y/n) ",
    },
    "cli_breathing_title": {
        "es": "🌬  Ejercicio de respiración 4-7-8",
        "en": "🌬  4-7-8 breathing exercise",
    },
    "cli_summary_title": {
        "es": "Resumen de la sesión",
        "en": "Session summary",
    },
    "cli_save_retry": {
        "es": "No se pudo guardar la sesión. ¿Reintentar? (s/n) ",
        "en": "The session could not be saved. Retry? (y/n) ",
    },
}

# Respuestas afirmativas para las preguntas de la terminal
YES_ANSWERS = ("s", "si", "sí", "y", "yes")

# Listas de frases para detección por subcadena (siempre en minúsculas)
PHRASES: Dict[str, Dict[str, List[str]]] = {
    "crisis_keywords": {
        "es": [
            "suicidio",
            "suicidarme",
            "suicida",
            "matarme",
            "quitarme la vida",
            "acabar con mi vida",
            "no quiero vivir",
            "quiero morir",
            "autolesión",
            "autolesion",
            "cortarme",
            "hacerme daño",
        ],
        "en": [
            "suicide",
            "suicidal",
            "kill myself",
            "end my life",
            "take my own life",
            "i want to die",
            "don't want to live",
            "do not want to live",
            "self-harm",
            "self harm",
            "hurt myself",
            "cut myself",
        ],
    },
    "session_end_phrases": {
        "es": [
            "terminemos",
            "terminar",
            "hasta aquí",
            "hasta aqui",
            "me voy",
            "me tengo que ir",
            "tengo que irme",
            "debo irme",
            "ya me voy",
            "chau",
            "adiós",
            "adios",
            "nos vemos",
            "hasta luego",
            "fin de sesión",
            "fin de sesion",
            "finalizar",
            "terminar sesión",
            "terminar sesion",
            "ya es todo",
            "eso es todo",
            "nada más",
            "nada mas",
        ],
        "en": [
            "goodbye",
            "bye",
            "see you",
            "let's stop",
            "let's end",
            "end the session",
            "end session",
            "i have to go",
            "i need to go",
            "gotta go",
            "that's all",
            "that is all",
            "nothing else",
        ],
    },
    # La narración calla desde la primera de estas frases en adelante
    "summary_lead_ins": {
        "es": [
            "en resumen",
            "resumiendo",
            "para resumir",
            "a modo de resumen",
            "resumen de la sesión",
            "resumen de nuestra sesión",
            "resumen de la conversación",
        ],
        "en": [
            "in summary",
            "to summarize",
            "to sum up",
            "session summary",
            "summary of our session",
            "summary of our conversation",
        ],
    },
    "breathing_cues": {
        "es": ["ejercicio de respiración", "respiración 4-7-8"],
        "en": ["breathing exercise", "4-7-8 breathing"],
    },
}

# Pares de palabras que, juntas en el mismo mensaje, también sugieren respiración
BREATHING_CUE_PAIRS = {
    "es": [("respirar", "ejercicio")],
    "en": [("breathe", "exercise")],
}

BREATHING_PROMPTS = {
    "es": {
        "inhale": "Inhala profundamente por la nariz",
        "hold": "Mantén el aire",
        "exhale": "Exhala lentamente por la boca",
        "rest": "Descansa",
    },
    "en": {
        "inhale": "Breathe in deeply through your nose",
        "hold": "Hold your breath",
        "exhale": "Breathe out slowly through your mouth",
        "rest": "Rest",
    },
}

# Tareas por defecto cuando el modelo no propuso ninguna bien formada
DEFAULT_TASKS = {
    "es": [
        {
            "title": "Practicar respiración consciente",
            "description": "Dedica 5 minutos cada día a practicar respiración profunda. Esto te ayudará a manejar el estrés y la ansiedad.",
            "frequency": "daily",
            "points": 50,
        },
        {
            "title": "Registrar emociones diarias",
            "description": "Al final del día, escribe cómo te sentiste y qué situaciones influyeron en tus emociones.",
            "frequency": "daily",
            "points": 75,
        },
        {
            "title": "Actividad física regular",
            "description": "Realiza al menos 20 minutos de actividad física que disfrutes, 3 veces esta semana.",
            "frequency": "weekly",
            "points": 100,
        },
    ],
    "en": [
        {
            "title": "Practice mindful breathing",
            "description": "Spend 5 minutes every day practicing deep breathing. It will help you manage stress and anxiety.",
            "frequency": "daily",
            "points": 50,
        },
        {
            "title": "Log your daily emotions",
            "description": "At the end of the day, write down how you felt and which situations influenced your emotions.",
            "frequency": "daily",
            "points": 75,
        },
        {
            "title": "Regular physical activity",
            "description": "Do at least 20 minutes of a physical activity you enjoy, 3 times this week.",
            "frequency": "weekly",
            "points": 100,
        },
    ],
}

DEFAULT_LANGUAGE = "es"
SUPPORTED_LANGUAGES = ["es", "en"]


def get_translation(key: str, lang: str = DEFAULT_LANGUAGE, **kwargs) -> str:
    """
    Obtiene el texto traducido para una clave dada.
    Si el idioma no existe, usa el default.
    Si la clave no existe, devuelve la clave misma.
    Los kwargs se interpolan con str.format.
    """
    if key not in TRANSLATIONS:
        return key

    text = TRANSLATIONS[key].get(lang, TRANSLATIONS[key].get(DEFAULT_LANGUAGE, key))
    return text.format(**kwargs) if kwargs else text


def get_phrases(key: str, lang: str = DEFAULT_LANGUAGE) -> List[str]:
    """Lista de frases de detección para el idioma, con fallback al default"""
    table = PHRASES.get(key, {})
    return table.get(lang, table.get(DEFAULT_LANGUAGE, []))


def resolve_language(preference: Optional[str]) -> str:
    """
    Normaliza una preferencia de idioma ('es', 'en-US', 'ES_cl'...).
    Si no es soportada, devuelve el default (es).
    """
    if preference:
        lang_code = preference.strip()[:2].lower()
        if lang_code in SUPPORTED_LANGUAGES:
            return lang_code
    return DEFAULT_LANGUAGE

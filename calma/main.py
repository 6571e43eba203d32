# calma/main.py

"""
Sesión de Calma en la terminal.

    calma-session --language es --user-id <uuid>

Sin reconocedor de voz la sesión usa siempre texto escrito; la narración
se simula con ConsoleSynthesizer.
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from calma.core.config import SessionConfig, get_settings
from calma.core.errors import ProviderError
from calma.core.i18n import YES_ANSWERS, get_translation, resolve_language
from calma.core.log import configure_logging
from calma.schemas.profile import UserProfile
from calma.schemas.session import SessionPhase, SessionRecord
from calma.services.ai_service import TurnDispatcher, build_completion_provider, get_system_prompt
from calma.services.console_speech import ConsoleSynthesizer
from calma.services.narration_service import NarrationPlayer
from calma.services.profile_service import ProfileService
from calma.services.session_repository import SupabaseSessionRepository
from calma.services.session_service import SessionAggregator
from calma.services.transcript_service import TranscriptAcquisition

logger = logging.getLogger(__name__)

END_COMMANDS = ("/fin", "/end")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="calma-session", description="Sesión de conversación terapéutica")
    parser.add_argument("--language", choices=["es", "en"], default=None, help="Idioma de la sesión")
    parser.add_argument("--provider", choices=["groq", "gemini"], default=None, help="Proveedor de IA (por defecto AI_PROVIDER)")
    parser.add_argument("--user-id", default=None, help="ID del perfil en Supabase")
    parser.add_argument("--no-save", action="store_true", help="No guardar la sesión al terminar")
    parser.add_argument("--echo-speech", action="store_true", help="Mostrar cada fragmento narrado")
    return parser


async def ask(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, input, prompt)
    except EOFError:
        return END_COMMANDS[0]


def print_summary(record: SessionRecord, language: str) -> None:
    analysis = record.analysis
    print(f"\n=== {get_translation('cli_summary_title', language)} ===")
    print(f"  {analysis.predominant_emotion} ({analysis.average_intensity}/10, {analysis.evolution.value})")
    for share in analysis.top_emotions:
        print(f"    - {share.emotion}: {share.percentage}%")
    print(f"  {record.duration_minutes} min · {', '.join(record.exercises_completed)}")
    for task in record.tasks:
        print(f"  [{task.points} pts] {task.title} ({task.frequency.value})")
        print(f"      {task.description}")


async def run_session(args: argparse.Namespace) -> Optional[SessionRecord]:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    profile: Optional[UserProfile] = None
    repository = None
    if args.user_id and settings.supabase_configured:
        profile = await ProfileService().get_profile(args.user_id)
        if not args.no_save:
            repository = SupabaseSessionRepository(args.user_id)
    elif args.user_id:
        logger.warning("Supabase no configurado: la sesión no se guardará")

    language = resolve_language(
        args.language or (profile.language_preference if profile else None) or settings.DEFAULT_LANGUAGE
    )
    config = SessionConfig.from_settings(settings, language=language)

    try:
        provider = build_completion_provider(settings, args.provider)
    except ProviderError as e:
        print(f"No se pudo inicializar el proveedor de IA: {e}", file=sys.stderr)
        return None
    if not provider.is_configured:
        print("Falta la API key del proveedor de IA (GROQ_API_KEY o GEMINI_API_KEY)", file=sys.stderr)
        return None

    system_prompt = get_system_prompt(
        language,
        user_name=profile.preferred_name if profile else "",
        assistant_name=(profile.assistant_name or "") if profile else "",
    )
    session = SessionAggregator(
        config,
        TurnDispatcher(provider, system_prompt, language),
        NarrationPlayer(ConsoleSynthesizer(stream=sys.stdout if args.echo_speech else None), config),
        TranscriptAcquisition(None, config.voice.language_tag),
        repository=repository,
        profile=profile,
    )

    @session.event_handler("on_message")
    def on_message(turn, display_text):
        speaker = "🧑" if turn.role.value == "user" else "💚"
        print(f"{speaker} {display_text}")

    @session.event_handler("on_crisis")
    def on_crisis(title, message):
        print(f"\n{title}\n{message}\n")

    @session.event_handler("on_breathing_phase")
    def on_breathing_phase(phase, cycle, seconds, prompt):
        if phase.value == "inhale" and cycle == 1:
            print(get_translation("cli_breathing_title", language))
        print(f"  [{cycle}/{config.breathing_cycles}] {prompt} ({seconds:g}s)")

    print(get_translation("cli_intro", language))
    await session.start()

    while session.phase != SessionPhase.TERMINATED:
        if session.phase == SessionPhase.CRISIS_INTERRUPT:
            answer = await ask(get_translation("cli_crisis_continue", language))
            if answer.strip().lower() in YES_ANSWERS:
                await session.dismiss_crisis()
            else:
                await session.leave_after_crisis()
            continue

        line = (await ask("> ")).strip()
        if line.lower() in END_COMMANDS:
            await session.end_session()
        elif line:
            await session.submit_text(line)

    record = session.record
    print_summary(record, language)

    while session.handoff_succeeded is False:
        answer = await ask(get_translation("cli_save_retry", language))
        if answer.strip().lower() not in YES_ANSWERS:
            break
        await session.hand_off()

    return record


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        record = asyncio.run(run_session(args))
    except KeyboardInterrupt:
        return 130
    return 0 if record is not None else 1


if __name__ == "__main__":
    sys.exit(main())

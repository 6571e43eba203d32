import json
import logging
from datetime import datetime


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def log_structured(logger: logging.Logger, level: str, event: str, **kwargs) -> None:
    """Helper para logging estructurado con contexto completo"""
    log_data = {
        "timestamp": datetime.utcnow().isoformat(),
        "event": event,
        "service": logger.name,
        **kwargs,
    }
    getattr(logger, level)(json.dumps(log_data, default=str, ensure_ascii=False))

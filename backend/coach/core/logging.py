import logging
import os

from coach.core.config import LOG_DIR, LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

logger = logging.getLogger("coach-backend")

_configured = False


def configure_logging(log_dir: str = LOG_DIR, level: str = LOG_LEVEL) -> None:
    global _configured
    if _configured:
        return
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    try:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            logging.FileHandler(os.path.join(log_dir, "backend.log"), encoding="utf-8")
        )
    except OSError as exc:
        logger.warning(f"file logging disabled: {exc}")
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )
    _configured = True

# app/utils/logger.py
# File loggers: "access" for request-level notes, "sessions" for the session
# audit trail (create/delete/leave/evict), "error" for tracebacks.
# Files live under config.LOGS_PATH; configure_logging() switches them to JSON.

import logging
import os
import traceback

from app import config

formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S")

LOG_FILES = {
    "access": ("access.log", logging.INFO),
    "sessions": ("sessions.log", logging.INFO),
    "error": ("error.log", logging.ERROR),
}


def setup_logger(name: str) -> logging.Logger:
    """Return the named file logger, attaching its handler on first use."""
    filename, level = LOG_FILES[name]
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    # uvicorn reload imports this module again; one handler per logger
    if not logger.handlers:
        os.makedirs(config.LOGS_PATH, exist_ok=True)
        handler = logging.FileHandler(os.path.join(config.LOGS_PATH, filename), encoding="utf-8", delay=True)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


access_logger = setup_logger("access")
session_logger = setup_logger("sessions")
error_logger = setup_logger("error")


def log_info(message):
    access_logger.info(message)


def log_warning(message):
    access_logger.warning(message)


def log_session_event(session_id: str, action: str, **fields):
    """One audit line per session lifecycle event, e.g. action=created creator=u1."""
    extra = " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
    session_logger.info(f"session={session_id} action={action}" + (f" {extra}" if extra else ""))


def log_exception(e: Exception, context: str = ""):
    error_logger.error(f"Exception in {context}: {e}\n{traceback.format_exc()}")

# /qfchat/utils.py
import logging
import os
from datetime import datetime, timezone
from typing import List

from dotenv import load_dotenv

# Load .env once here so all modules see env vars
load_dotenv()

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
DEBUG_LOG = os.getenv("DEBUG_LOG", "0") == "1"
QF_NUMBER_MIN = int(os.getenv("QF_NUMBER_MIN", "100000"))
QF_NUMBER_MAX = int(os.getenv("QF_NUMBER_MAX", "999999"))


def cors_origins() -> List[str]:
    """
    Allowed CORS origins from CORS_ORIGINS (comma-separated).
    Defaults to "*".
    """
    raw = os.getenv("CORS_ORIGINS", "*")
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or ["*"]


# -------------------- Logging --------------------
def get_logger(name: str = "qfchat") -> logging.Logger:
    """
    Console logger using the "[INFO] message" layout.
    Handlers are attached once per logger name.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
        logger.addHandler(handler)
        logger.propagate = False
    logger.setLevel(logging.DEBUG if DEBUG_LOG else logging.INFO)
    return logger


logger = get_logger()


# -------------------- Time helpers --------------------
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """
    Current UTC time in ISO-8601 string.
    """
    return utcnow().isoformat()

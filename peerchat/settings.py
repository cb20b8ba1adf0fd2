# settings.py
import os
from dotenv import load_dotenv

# Load .env from the package directory first, then project root
ENV_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), '.env'))
load_dotenv(ENV_PATH)

ENV_PATH_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '.env'))
load_dotenv(ENV_PATH_ROOT)

# UDP endpoint every peer listens on
CHAT_HOST = os.getenv("CHAT_HOST", "0.0.0.0")
CHAT_PORT = int(os.getenv("CHAT_PORT", "6666"))

# Seconds to hold a successful send before acknowledging it
CHAT_ACK_DELAY = float(os.getenv("CHAT_ACK_DELAY", "0"))

DB_BACKEND = os.getenv("DB_BACKEND", "sqlite").lower()
SQLITE_PATH = os.getenv("SQLITE_PATH", "messages.db")

DB_HOST = os.getenv("DB_HOST", "localhost")
DB_USER = os.getenv("DB_USER")
DB_PASSWORD = os.getenv("DB_PASSWORD")
DB_NAME = os.getenv("DB_DATABASE")
DB_PORT = int(os.getenv("DB_PORT", "3306"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DEFAULT_SENDER_NAME = "anonymous"


def get_sender_name() -> str:
    """Local display name, looked up fresh on every send so a rename takes effect immediately."""
    return os.getenv("CHAT_SENDER_NAME") or DEFAULT_SENDER_NAME

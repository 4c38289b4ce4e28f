import os

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _int_env(name, default=0):
    val = os.getenv(name)
    if not val:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _float_env(name, default):
    val = os.getenv(name)
    if not val:
        return default
    try:
        return float(val)
    except ValueError:
        return default


def parse_admin_ids(raw: str) -> set:
    """'1, 2,3' -> {1, 2, 3}; blanks and non-numeric entries are skipped"""
    ids = set()
    for part in (raw or "").split(","):
        part = part.strip()
        if part.isdigit():
            ids.add(int(part))
    return ids


# --- TELEGRAM ---
API_ID = _int_env("API_ID")
API_HASH = os.getenv("API_HASH", "")
BOT_TOKEN = os.getenv("BOT_TOKEN", "")
BOT_STRING_SESSION = os.getenv("BOT_STRING_SESSION", "")
ADMIN_IDS = parse_admin_ids(os.getenv("ADMIN_IDS", ""))
LOG_CHANNEL_ID = _int_env("LOG_CHANNEL_ID")

# --- DATABASE ---
MONGO_URL = os.getenv("MONGO_URL", "")
DB_NAME = os.getenv("DB_NAME", "cloudbot")

# --- WEB / UPTIME ---
BASE_URL = os.getenv("BASE_URL", "")
PORT = _int_env("PORT", 8080)

# --- TUNING ---
BROADCAST_DELAY = _float_env("BROADCAST_DELAY", 0.05)  # ~20 msg/s
WRITE_QUEUE_FLUSH_INTERVAL = _float_env("WRITE_QUEUE_FLUSH_INTERVAL", 5)

REQUIRED = {
    "API_ID": lambda: API_ID,
    "API_HASH": lambda: API_HASH,
    "BOT_TOKEN": lambda: BOT_TOKEN,
    "MONGO_URL": lambda: MONGO_URL,
}


def validate_config() -> list:
    """Names of required settings that are missing from the environment"""
    return [name for name, getter in REQUIRED.items() if not getter()]


def is_admin(user_id) -> bool:
    if not user_id:
        return False
    try:
        return int(user_id) in ADMIN_IDS
    except (TypeError, ValueError):
        return False

import os


def load_dotenv_file() -> None:
    base_dir = os.path.dirname(__file__)
    env_paths = [
        os.path.join(base_dir, ".env"),
        os.path.join(os.path.dirname(base_dir), ".env"),
    ]
    for env_path in env_paths:
        if not os.path.exists(env_path):
            continue
        with open(env_path, "r", encoding="utf-8") as f:
            for raw in f:
                line = raw.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, val = line.split("=", 1)
                key = key.strip()
                val = val.strip().strip('"').strip("'")
                if key and key not in os.environ:
                    os.environ[key] = val


load_dotenv_file()

APP_NAME = "splitroom-backend"
APP_VERSION = "1.0.0"

HOST = os.getenv("SPLITROOM_HOST", "127.0.0.1")
PORT = int(os.getenv("SPLITROOM_PORT", "8000"))

DB_PATH = os.getenv("SPLITROOM_DB_PATH", os.path.join(os.path.dirname(__file__), "app.db"))

GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "").strip()
GEMINI_TIMEOUT_SEC = float(os.getenv("GEMINI_TIMEOUT_SEC", "20"))
MAX_UPLOAD_BYTES = int(os.getenv("SPLITROOM_MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

# Display
DISPLAY_LOCALE = os.getenv("SPLITROOM_LOCALE", "").strip()
FALLBACK_LOCALE = "en-US"
DEFAULT_CURRENCY = os.getenv("SPLITROOM_DEFAULT_CURRENCY", "USD").strip().upper() or "USD"

# Room lifecycle
EMPTY_ROOM_TTL_MINUTES = int(os.getenv("SPLITROOM_EMPTY_ROOM_TTL_MINUTES", "30"))
COMPLETED_ROOM_TTL_DAYS = int(os.getenv("SPLITROOM_COMPLETED_ROOM_TTL_DAYS", "15"))
ROOM_CODE_LENGTH = 8
ROOM_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

DEFAULT_TAX_PROFILES = [
    {"id": "general", "name": "General", "rate": 6, "is_global": False, "is_double": False, "icon": "Coins"},
    {"id": "special", "name": "Special", "rate": 18, "is_global": False, "is_double": False, "icon": "CreditCard"},
    {"id": "luxe", "name": "Luxe", "rate": 40, "is_global": False, "is_double": False, "icon": "Sparkles"},
]

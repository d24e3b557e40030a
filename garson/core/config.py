import os

from dotenv import load_dotenv

# Load the .env from the project root
load_dotenv()


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./garson.db")
ENV = os.getenv("ENV", "dev")
ENV_NORMALIZED = ENV.lower()
IS_DEV = ENV_NORMALIZED in {"dev", "development", "local"}
IS_PROD = ENV_NORMALIZED in {"prod", "production"}
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Language model backends
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini").strip()
OPENAI_UPSELL_MODEL = os.getenv("OPENAI_UPSELL_MODEL", OPENAI_MODEL).strip()
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "8"))
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "1"))
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.3"))
LLM_ENABLED = _env_flag("LLM_ENABLED", "1")

# Ordering flow
CANDIDATE_LIMIT = int(os.getenv("CANDIDATE_LIMIT", "20"))
CONFIDENCE_THRESHOLD = float(os.getenv("CONFIDENCE_THRESHOLD", "0.7"))
CONVERSATION_HISTORY_SIZE = int(os.getenv("CONVERSATION_HISTORY_SIZE", "6"))
BUTTON_TITLE_MAX_LENGTH = int(os.getenv("BUTTON_TITLE_MAX_LENGTH", "20"))
MAX_BUTTONS_PER_MESSAGE = 3
LOCK_RETRY_DELAY_SECONDS = float(os.getenv("LOCK_RETRY_DELAY_SECONDS", "0.05"))

# Upsell
UPSELL_ENABLED = _env_flag("UPSELL_ENABLED", "1")
UPSELL_SAMPLE_SIZE = int(os.getenv("UPSELL_SAMPLE_SIZE", "200"))
UPSELL_MIN_CO_OCCURRENCE = int(os.getenv("UPSELL_MIN_CO_OCCURRENCE", "3"))
UPSELL_COOLDOWN_ORDERS = int(os.getenv("UPSELL_COOLDOWN_ORDERS", "3"))
UPSELL_MESSAGE_MAX_LENGTH = int(os.getenv("UPSELL_MESSAGE_MAX_LENGTH", "160"))

# Payments
PAYMENT_BASE_URL = os.getenv("PAYMENT_BASE_URL", "https://pay.garson.local/checkout").rstrip("/")

# Admin
ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN", "").strip()

META_WA_ACCESS_TOKEN = os.getenv("META_WA_ACCESS_TOKEN", "")
META_WA_PHONE_NUMBER_ID = os.getenv("META_WA_PHONE_NUMBER_ID", "")
META_WA_VERIFY_TOKEN = os.getenv("META_WA_VERIFY_TOKEN", "")
META_API_VERSION = os.getenv("META_API_VERSION", "v19.0")
WHATSAPP_PROVIDER = os.getenv("WHATSAPP_PROVIDER", "mock").strip().lower()

# CORS
_cors_env = os.getenv("CORS_ORIGINS", "")
CORS_ORIGINS = [origin.strip() for origin in _cors_env.split(",") if origin.strip() and origin.strip() != "*"]

if not CORS_ORIGINS and IS_DEV:
    CORS_ORIGINS = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

import os
from pathlib import Path

BASE_DIR = Path(os.getenv("AEGIS_HOME", Path.cwd()))
DB_PATH = Path(os.getenv("AEGIS_DB_PATH", str(BASE_DIR / "aegis.db")))
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
TOKEN_EXPIRE_HOURS = int(os.getenv("TOKEN_EXPIRE_HOURS", "24"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

AI_GATEWAY_URL = os.getenv("AI_GATEWAY_URL", "https://api.openai.com/v1/chat/completions")
AI_GATEWAY_API_KEY = os.getenv("AI_GATEWAY_API_KEY", "")
AI_MODEL = os.getenv("AI_MODEL", "gpt-4.1-mini")
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "30"))

DEFAULT_ALERT_RADIUS_KM = float(os.getenv("DEFAULT_ALERT_RADIUS_KM", "2.0"))
MIN_RADIUS_KM = 0.1
MAX_RADIUS_KM = 50.0
ALERT_TIMEZONE = os.getenv("ALERT_TIMEZONE", "UTC")

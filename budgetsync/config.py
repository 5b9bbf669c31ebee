import os
from dotenv import load_dotenv

load_dotenv()

DB_URL = os.getenv("DB_URL", "sqlite:///./account.sqlite")
DB_BUSY_TIMEOUT_SECONDS = float(os.getenv("DB_BUSY_TIMEOUT_SECONDS", "5"))
DB_BUSY_RETRIES = max(1, int(os.getenv("DB_BUSY_RETRIES", "5")))
DB_BUSY_BACKOFF_SECONDS = float(os.getenv("DB_BUSY_BACKOFF_SECONDS", "0.05"))

USER_FILES_DIR = os.getenv(
    "USER_FILES_DIR", os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "user-files"))
)
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE_BYTES", str(20 * 1024 * 1024)))

SERVER_TOKEN = os.getenv("SERVER_TOKEN")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

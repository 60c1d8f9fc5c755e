import os

BACKEND_TOKEN = os.environ.get("BACKEND_TOKEN", "")
APP_DATA_DIR = os.environ.get("APP_DATA_DIR", os.path.join(os.getcwd(), "data"))
LOG_DIR = os.environ.get("LOG_DIR", os.path.join(APP_DATA_DIR, "logs"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
BACKEND_WORKERS = int(os.environ.get("BACKEND_WORKERS", "2"))
BACKEND_PORT = int(os.environ.get("BACKEND_PORT", "49671"))
BACKEND_URL = os.environ.get("BACKEND_URL", f"http://127.0.0.1:{BACKEND_PORT}")

DB_PATH = os.environ.get("DB_PATH", os.path.join(APP_DATA_DIR, "coach.db"))

CLAUDE_CODE_CLI_PATH = os.environ.get("CLAUDE_CODE_CLI_PATH", "")

# Conversation transcript limits used when building chat prompts
SESSION_MAX_MESSAGES = int(os.environ.get("CLAUDE_SESSION_MAX_MESSAGES", "20"))
SESSION_MAX_CHARS = int(os.environ.get("CLAUDE_SESSION_MAX_CHARS", "12000"))

# Job executor
JOB_SAVE_INTERVAL_MS = int(os.environ.get("JOB_SAVE_INTERVAL_MS", "400"))
EVALUATION_SAVE_INTERVAL_MS = int(os.environ.get("EVALUATION_SAVE_INTERVAL_MS", "300"))
JOB_VALIDITY_CHECK_MS = int(os.environ.get("JOB_VALIDITY_CHECK_MS", "500"))
JOB_MAX_RETAINED = int(os.environ.get("JOB_MAX_RETAINED", "100"))
JOB_MAX_AGE_SEC = int(os.environ.get("JOB_MAX_AGE_SEC", "3600"))

# Client-side registry and stream multiplexer
POLL_INTERVAL_SEC = float(os.environ.get("POLL_INTERVAL_SEC", "1.0"))
MAX_POLL_TIME_SEC = float(os.environ.get("MAX_POLL_TIME_SEC", "120"))
STREAM_FLUSH_INTERVAL_SEC = float(os.environ.get("STREAM_FLUSH_INTERVAL_SEC", "0.05"))
STREAM_POLL_INTERVAL_SEC = float(os.environ.get("STREAM_POLL_INTERVAL_SEC", "1.0"))
COMPLETED_STREAM_TTL_SEC = float(os.environ.get("COMPLETED_STREAM_TTL_SEC", "300"))


def ensure_dirs() -> None:
    os.makedirs(APP_DATA_DIR, exist_ok=True)
    os.makedirs(LOG_DIR, exist_ok=True)

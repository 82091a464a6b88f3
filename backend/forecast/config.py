import os
import sys
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


APP_ORIGIN = os.getenv("APP_ORIGIN", "http://localhost:3000")
DATA_DIR = os.getenv("DATA_DIR") or os.path.join(os.getcwd(), "data")
DATABASE_URL = os.getenv("DATABASE_URL") or f"sqlite:///{os.path.join(DATA_DIR, 'records.sqlite')}"
BACKEND_API_KEY = os.getenv("BACKEND_API_KEY")
BACKEND_INTERNAL_URL = os.getenv("BACKEND_INTERNAL_URL", "http://localhost:8000")

# External prediction job
PYTHON_EXECUTABLE = os.getenv("PYTHON_EXECUTABLE", sys.executable or "python3")
PREDICT_SCRIPT = os.getenv(
    "PREDICT_SCRIPT",
    os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))), "worker", "predict.py"),
)
# Empty: any stdout line marks the job complete
COMPLETION_SENTINEL = os.getenv("COMPLETION_SENTINEL", "")
# 0 disables the timeout
PREDICTION_TIMEOUT_SECONDS = int(os.getenv("PREDICTION_TIMEOUT_SECONDS", "0"))
CANCEL_SUPERSEDED_JOBS = _flag("CANCEL_SUPERSEDED_JOBS")
# 0 keeps status entries for the process lifetime
JOB_STATUS_TTL_SECONDS = int(os.getenv("JOB_STATUS_TTL_SECONDS", "86400"))

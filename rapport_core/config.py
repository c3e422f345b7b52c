
# ═════════════════════════════════════════════════════════════════════════
# RAPPORT: WORKPLACE CONVERSATION ASSESSMENT
# Service Configuration & Constants
# ═════════════════════════════════════════════════════════════════════════

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


# ── SYSTEM PATHS ──
BASE_DIR = Path(__file__).resolve().parent.parent
SCENARIOS_DIR = Path(os.getenv("SCENARIOS_DIR", BASE_DIR / "data" / "scenarios"))
UPLOADS_DIR = Path(os.getenv("UPLOADS_DIR", BASE_DIR / "uploads"))
PUBLIC_DIR = BASE_DIR / "public"

# ── DATABASE ──
DATABASE_URL = os.getenv("DATABASE_URL", "")
DATABASE_SSL = os.getenv("DATABASE_SSL", "false").lower() == "true"
DB_POOL_SIZE = _env_int("DB_POOL_SIZE", 20)
DB_POOL_TIMEOUT = _env_int("DB_POOL_TIMEOUT", 5)            # seconds to wait for a connection
DB_STATEMENT_TIMEOUT = _env_int("DB_STATEMENT_TIMEOUT", 30)  # seconds per statement
DB_CONNECT_ATTEMPTS = _env_int("DB_CONNECT_ATTEMPTS", 5)

# ── LANGUAGE MODEL ──
LLM_MODEL = os.getenv("LLM_MODEL", "llama-3.3-70b-versatile")
LLM_TEMP = 0.7
CONVERSATION_MAX_TOKENS = _env_int("CONVERSATION_MAX_TOKENS", 1024)
ANALYSIS_MAX_TOKENS = _env_int("ANALYSIS_MAX_TOKENS", 2048)

# ── SPEECH ──
WHISPER_CPP_DIR = Path(os.getenv("WHISPER_CPP_DIR", BASE_DIR / "whisper.cpp"))
WHISPER_MODEL = os.getenv("WHISPER_MODEL", "ggml-base.en.bin")
STT_TIMEOUT_SECONDS = _env_int("STT_TIMEOUT_SECONDS", 60)
TTS_VOICE = os.getenv("TTS_VOICE", "en-US-AndrewNeural")
TTS_RATE = os.getenv("TTS_RATE", "+0%")
TTS_MAX_CHARS = _env_int("TTS_MAX_CHARS", 5000)
MAX_UPLOAD_BYTES = _env_int("MAX_UPLOAD_BYTES", 10 * 1024 * 1024)

# ── ACCESS & SERVER ──
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")
CORS_ORIGIN = os.getenv("CORS_ORIGIN", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
HOST = os.getenv("HOST", "0.0.0.0")
PORT = _env_int("PORT", 3000)

# ── SCORING RUBRIC (Assessment Instrument) ──
SCORING_DIMENSIONS = {
    "conflictResolution": "Handling disagreement and working toward a resolution.",
    "professionalism": "Tone, respect and composure throughout the conversation.",
    "articulation": "Clarity and structure when expressing ideas.",
    "learning": "Openness to feedback and willingness to adapt.",
}

# ── CONVERSATION PROTOCOL ──
PARTICIPANT_ROLE = "user"
CHARACTER_ROLE = "assistant"
SUMMARY_MAX_CHARS = 100

from dotenv import load_dotenv
load_dotenv()

"""
PlayGuard — Configuration
Every setting reads from the environment, with .env loaded first.
"""
import os
from dataclasses import dataclass


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    # ── Server ──
    HOST: str = os.getenv("API_HOST", "0.0.0.0")
    PORT: int = int(os.getenv("API_PORT", "8000"))

    # ── Database ──
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./playguard.db")

    # ── Session Tokens ──
    TOKEN_EXPIRY_SECONDS: int = int(os.getenv("TOKEN_EXPIRY_SECONDS", "180"))       # 3 minutes
    TOKEN_RETENTION_SECONDS: int = int(os.getenv("TOKEN_RETENTION_SECONDS", "3600"))  # purge 1h past expiry
    CLEANUP_INTERVAL_SECONDS: int = int(os.getenv("CLEANUP_INTERVAL_SECONDS", "600"))
    ENFORCE_GAME_ALLOWLIST: bool = _env_bool("ENFORCE_GAME_ALLOWLIST", "true")

    # ── Submission Quotas (per wallet) ──
    MAX_GAMES_PER_HOUR: int = int(os.getenv("MAX_GAMES_PER_HOUR", "20"))
    MAX_GAMES_PER_DAY: int = int(os.getenv("MAX_GAMES_PER_DAY", "100"))
    MIN_SUBMISSION_INTERVAL_MS: int = int(os.getenv("MIN_SUBMISSION_INTERVAL_MS", "5000"))

    # Claimed time_ms may exceed the server-observed session length by this much
    # (countdown overlay + network latency) before it is flagged.
    SESSION_DURATION_TOLERANCE_MS: int = int(os.getenv("SESSION_DURATION_TOLERANCE_MS", "10000"))

    # ── Anomaly Log ──
    ANOMALY_QUEUE_SIZE: int = int(os.getenv("ANOMALY_QUEUE_SIZE", "1000"))
    SUSPICIOUS_WINDOW_DAYS: int = int(os.getenv("SUSPICIOUS_WINDOW_DAYS", "7"))
    SUSPICIOUS_MIN_INCIDENTS: int = int(os.getenv("SUSPICIOUS_MIN_INCIDENTS", "3"))

    # ── Rate Limiting ──
    RATE_LIMIT_PER_MINUTE: int = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))  # max requests per IP per minute


config = Config()

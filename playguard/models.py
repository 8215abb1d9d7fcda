"""
PlayGuard — Database Models
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Float, Boolean, DateTime, Text, JSON, Index
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC, matching how DateTime columns round-trip through SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ═══════════════════════════════════════════
#              GAME SESSIONS
# ═══════════════════════════════════════════

class GameSession(Base):
    __tablename__ = "game_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_token = Column(String(64), unique=True, nullable=False, index=True)  # 64 char hex
    wallet_address = Column(String(66), nullable=False, index=True)
    game_type = Column(String(50), nullable=False)

    start_time = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

    # Flipped once by a conditional UPDATE ... WHERE used = false
    used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)


# ═══════════════════════════════════════════
#              GAME RECORDS
# ═══════════════════════════════════════════

class GameRecord(Base):
    __tablename__ = "game_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(66), nullable=False)
    game_type = Column(String(50), nullable=False)
    score = Column(Float, default=0)
    distance = Column(Float, default=0)
    time_ms = Column(Integer, default=0)

    game_metadata = Column(JSON, nullable=True)       # per-game counters + server difficulty
    client_info = Column(JSON, nullable=True)

    # Audit trail
    session_token = Column(String(64), nullable=True, index=True)
    session_start_time = Column(DateTime, nullable=True)
    session_duration_ms = Column(Integer, nullable=True)  # server-observed, compare with time_ms
    validation_warnings = Column(JSON, nullable=True)

    played_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_game_records_wallet_played", "wallet_address", "played_at"),
    )


# ═══════════════════════════════════════════
#           SUSPICIOUS ACTIVITY LOG
# ═══════════════════════════════════════════

class SuspiciousActivity(Base):
    __tablename__ = "suspicious_activity_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(66), nullable=False, index=True)
    reason = Column(String(100), nullable=False)
    details = Column(JSON, nullable=True)

    # Request metadata
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)

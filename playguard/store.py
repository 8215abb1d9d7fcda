"""
PlayGuard — Token & History Store

The persistence collaborator behind the integrity pipeline. Only a handful
of operations are needed: insert a token, read it, flip its `used` flag with
a conditional write, read a wallet's recent submission times, and append
anomaly records. Accepted game records are written here too by the default
reward sink so the rate limiter has history to read.

SqlStore is the production implementation. MemoryStore keeps everything in
process and is meant for single-worker deployments and tests.
"""
import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, delete, and_, func, desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from playguard.errors import StoreUnavailable
from playguard.models import GameSession, GameRecord, SuspiciousActivity, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionToken:
    token: str
    wallet: str
    game_type: str
    start_time: datetime
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None


@dataclass(frozen=True)
class AnomalyRecord:
    wallet: str
    reason: str
    details: dict = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


class Store:
    """Interface every store implements."""

    async def insert_token(self, token: SessionToken) -> None:
        raise NotImplementedError

    async def get_token(self, token: str) -> Optional[SessionToken]:
        raise NotImplementedError

    async def consume_token(self, token: str, used_at: datetime) -> bool:
        """Set used=True only if still unused. True iff this call flipped it."""
        raise NotImplementedError

    async def purge_expired_tokens(self, cutoff: datetime) -> int:
        raise NotImplementedError

    async def recent_submission_times(self, wallet: str, since: datetime) -> list[datetime]:
        raise NotImplementedError

    async def append_anomaly(self, record: AnomalyRecord) -> None:
        raise NotImplementedError

    async def suspicious_wallets(self, since: datetime, min_incidents: int = 3) -> list[dict]:
        raise NotImplementedError

    async def insert_record(self, record: dict) -> int:
        raise NotImplementedError

    async def records_for_wallet(self, wallet: str, game_type: str = None, limit: int = 10) -> list[dict]:
        raise NotImplementedError


def _token_from_row(row: GameSession) -> SessionToken:
    return SessionToken(
        token=row.session_token,
        wallet=row.wallet_address,
        game_type=row.game_type,
        start_time=row.start_time,
        expires_at=row.expires_at,
        used=bool(row.used),
        used_at=row.used_at,
    )


RECORD_FIELDS = (
    "id", "wallet_address", "game_type", "score", "distance", "time_ms",
    "game_metadata", "validation_warnings", "session_duration_ms", "played_at",
)


def _format_record(r: dict) -> dict:
    out = {k: r.get(k) for k in RECORD_FIELDS}
    out["game_metadata"] = out["game_metadata"] or {}
    out["validation_warnings"] = out["validation_warnings"] or []
    out["played_at"] = out["played_at"].isoformat()
    return out


def _aggregate_incidents(rows, min_incidents: int) -> list[dict]:
    """rows: (wallet, reason, created_at) -> suspicious-wallet summaries."""
    by_wallet = {}
    for wallet, reason, created_at in rows:
        entry = by_wallet.setdefault(wallet, {
            "wallet_address": wallet, "incident_count": 0, "reasons": set(),
            "first_incident": created_at, "last_incident": created_at,
        })
        entry["incident_count"] += 1
        entry["reasons"].add(reason)
        entry["first_incident"] = min(entry["first_incident"], created_at)
        entry["last_incident"] = max(entry["last_incident"], created_at)

    result = []
    for entry in by_wallet.values():
        if entry["incident_count"] < min_incidents:
            continue
        entry["reasons"] = sorted(entry["reasons"])
        result.append(entry)
    result.sort(key=lambda e: (-e["incident_count"], e["wallet_address"]))
    return result


# ═══════════════════════════════════════════════════════
#                   SQL STORE
# ═══════════════════════════════════════════════════════

class SqlStore(Store):

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        try:
            async with self.session_factory() as db:
                yield db
        except SQLAlchemyError as e:
            logger.error(f"Store unavailable: {e}")
            raise StoreUnavailable(str(e)) from e

    async def insert_token(self, token: SessionToken) -> None:
        async with self._session() as db:
            db.add(GameSession(
                session_token=token.token,
                wallet_address=token.wallet,
                game_type=token.game_type,
                start_time=token.start_time,
                expires_at=token.expires_at,
                used=token.used,
                used_at=token.used_at,
            ))
            await db.commit()

    async def get_token(self, token: str) -> Optional[SessionToken]:
        async with self._session() as db:
            result = await db.execute(select(GameSession).where(GameSession.session_token == token))
            row = result.scalar_one_or_none()
            return _token_from_row(row) if row else None

    async def consume_token(self, token: str, used_at: datetime) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(GameSession)
                .where(and_(
                    GameSession.session_token == token,
                    GameSession.used == False,  # noqa: E712
                ))
                .values(used=True, used_at=used_at)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def purge_expired_tokens(self, cutoff: datetime) -> int:
        async with self._session() as db:
            result = await db.execute(
                delete(GameSession)
                .where(GameSession.expires_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount or 0

    async def recent_submission_times(self, wallet: str, since: datetime) -> list[datetime]:
        async with self._session() as db:
            result = await db.execute(
                select(GameRecord.played_at).where(and_(
                    GameRecord.wallet_address == wallet,
                    GameRecord.played_at >= since,
                )).order_by(desc(GameRecord.played_at))
            )
            return list(result.scalars().all())

    async def append_anomaly(self, record: AnomalyRecord) -> None:
        async with self._session() as db:
            db.add(SuspiciousActivity(
                wallet_address=record.wallet,
                reason=record.reason,
                details=record.details,
                ip_address=record.ip_address,
                user_agent=record.user_agent,
                created_at=record.timestamp,
            ))
            await db.commit()

    async def suspicious_wallets(self, since: datetime, min_incidents: int = 3) -> list[dict]:
        async with self._session() as db:
            flagged = await db.execute(
                select(SuspiciousActivity.wallet_address)
                .where(SuspiciousActivity.created_at > since)
                .group_by(SuspiciousActivity.wallet_address)
                .having(func.count(SuspiciousActivity.id) >= min_incidents)
            )
            wallets = list(flagged.scalars().all())
            if not wallets:
                return []
            rows = await db.execute(
                select(
                    SuspiciousActivity.wallet_address,
                    SuspiciousActivity.reason,
                    SuspiciousActivity.created_at,
                ).where(and_(
                    SuspiciousActivity.wallet_address.in_(wallets),
                    SuspiciousActivity.created_at > since,
                ))
            )
            return _aggregate_incidents(rows.all(), min_incidents)

    async def insert_record(self, record: dict) -> int:
        async with self._session() as db:
            row = GameRecord(**record)
            db.add(row)
            await db.flush()
            record_id = row.id
            await db.commit()
            return record_id

    async def records_for_wallet(self, wallet: str, game_type: str = None, limit: int = 10) -> list[dict]:
        async with self._session() as db:
            query = select(GameRecord).where(GameRecord.wallet_address == wallet)
            if game_type:
                query = query.where(GameRecord.game_type == game_type)
            query = query.order_by(desc(GameRecord.played_at)).limit(limit)
            result = await db.execute(query)
            return [_format_record({k: getattr(r, k) for k in RECORD_FIELDS}) for r in result.scalars().all()]


# ═══════════════════════════════════════════════════════
#                  MEMORY STORE
# ═══════════════════════════════════════════════════════

class MemoryStore(Store):

    def __init__(self):
        self.tokens: dict[str, SessionToken] = {}
        self.records: list[dict] = []
        self.anomalies: list[AnomalyRecord] = []
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def insert_token(self, token: SessionToken) -> None:
        async with self._lock:
            if token.token in self.tokens:
                raise ValueError("Duplicate session token")
            self.tokens[token.token] = token

    async def get_token(self, token: str) -> Optional[SessionToken]:
        return self.tokens.get(token)

    async def consume_token(self, token: str, used_at: datetime) -> bool:
        async with self._lock:
            current = self.tokens.get(token)
            if current is None or current.used:
                return False
            self.tokens[token] = replace(current, used=True, used_at=used_at)
            return True

    async def purge_expired_tokens(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [k for k, t in self.tokens.items() if t.expires_at < cutoff]
            for k in stale:
                del self.tokens[k]
            return len(stale)

    async def recent_submission_times(self, wallet: str, since: datetime) -> list[datetime]:
        times = [r["played_at"] for r in self.records
                 if r["wallet_address"] == wallet and r["played_at"] >= since]
        return sorted(times, reverse=True)

    async def append_anomaly(self, record: AnomalyRecord) -> None:
        self.anomalies.append(record)

    async def suspicious_wallets(self, since: datetime, min_incidents: int = 3) -> list[dict]:
        rows = [(a.wallet, a.reason, a.timestamp) for a in self.anomalies if a.timestamp > since]
        return _aggregate_incidents(rows, min_incidents)

    async def insert_record(self, record: dict) -> int:
        record_id = next(self._ids)
        row = dict(record, id=record_id)
        row.setdefault("played_at", utcnow())
        self.records.append(row)
        return record_id

    async def records_for_wallet(self, wallet: str, game_type: str = None, limit: int = 10) -> list[dict]:
        rows = [r for r in self.records
                if r["wallet_address"] == wallet and (not game_type or r["game_type"] == game_type)]
        rows.sort(key=lambda r: r["played_at"], reverse=True)
        return [_format_record(r) for r in rows[:limit]]

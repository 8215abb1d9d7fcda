"""
PlayGuard — API Server v1.0

FastAPI front for the gameplay integrity pipeline.
Issues session tokens, accepts game results, exposes the anomaly review view.

- Session tokens are single-use and expire after 3 minutes
- Results pass token -> plausibility -> quota before they are recorded
- Rejections are written to the suspicious activity log
- Per-IP request throttle in front of everything
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional, Union

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from playguard import __version__
from playguard.anomaly import AnomalyLogger
from playguard.config import config
from playguard.errors import IntegrityError, Reason, ServiceUnavailable, StoreUnavailable
from playguard.gateway import IntegrityGateway
from playguard.limits import default_registry
from playguard.models import Base, utcnow
from playguard.ratelimit import DAY, RateLimitRules, check_rate_limit
from playguard.sessions import SessionTokenManager
from playguard.store import SqlStore, Store
from playguard.validator import GameSubmission

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

VERSION = __version__


# ═══════════════════════════════════════════════════════
#                    DATABASE
# ═══════════════════════════════════════════════════════

engine = create_async_engine(config.DATABASE_URL, echo=False)
SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ═══════════════════════════════════════════════════════
#                    SERVICES
# ═══════════════════════════════════════════════════════

class Services:
    """Everything a request needs, wired around one store."""

    def __init__(self, store: Store, registry=default_registry, cfg=config):
        self.store = store
        self.registry = registry
        self.rules = RateLimitRules.from_config(cfg)
        self.sessions = SessionTokenManager(store, registry)
        self.anomalies = AnomalyLogger(store, cfg.ANOMALY_QUEUE_SIZE)
        self.gateway = IntegrityGateway(
            store, self.sessions, self.anomalies, registry=registry, rules=self.rules,
        )


services = Services(SqlStore(SessionLocal))


def get_services() -> Services:
    return services


# ═══════════════════════════════════════════════════════
#                  RATE LIMITER
# ═══════════════════════════════════════════════════════

class RateLimiter:
    def __init__(self, max_per_minute: int = 60, clock: Callable[[], float] = time.time):
        self.max_per_minute = max_per_minute
        self.requests: dict[str, list[float]] = {}
        self.clock = clock
        self._last_sweep = clock()

    def is_limited(self, ip: str) -> bool:
        now = self.clock()
        window = now - 60
        if now - self._last_sweep >= 60:
            self._sweep(now)
        recent = [t for t in self.requests.get(ip, ()) if t > window]
        if len(recent) >= self.max_per_minute:
            self.requests[ip] = recent
            return True
        recent.append(now)
        self.requests[ip] = recent
        return False

    def _sweep(self, now: float):
        # Forget IPs with nothing left inside the window
        window = now - 60
        for ip in [ip for ip, times in self.requests.items() if not times or times[-1] <= window]:
            del self.requests[ip]
        self._last_sweep = now

rate_limiter = RateLimiter(config.RATE_LIMIT_PER_MINUTE)


# ═══════════════════════════════════════════════════════
#                    STARTUP
# ═══════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    services.anomalies.start()
    task = asyncio.create_task(session_janitor(services.sessions))
    logger.info(f"PlayGuard API v{VERSION} started")
    yield
    task.cancel()
    await services.anomalies.stop()
    await engine.dispose()

app = FastAPI(
    title="PlayGuard API",
    description="Gameplay integrity verification for reward-bearing games",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    if request.url.path in ("/health", "/", "/api/v1/health"):
        return await call_next(request)
    ip = request.client.host if request.client else "unknown"
    if rate_limiter.is_limited(ip):
        return JSONResponse(
            status_code=429,
            content={"detail": f"Rate limit exceeded. Max {rate_limiter.max_per_minute} requests per minute."},
        )
    return await call_next(request)


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    if isinstance(exc, ServiceUnavailable):
        logger.error(f"{request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"success": False, **exc.to_dict()})


# ═══════════════════════════════════════════════════════
#                REQUEST MODELS
# ═══════════════════════════════════════════════════════

WALLET_PATTERN = "^0x[a-fA-F0-9]{64}$"


class SessionRequest(BaseModel):
    wallet_address: str = Field(..., pattern=WALLET_PATTERN)
    game_type: str = Field(..., min_length=1, max_length=50)


class RecordRequest(BaseModel):
    wallet_address: str = Field(..., pattern=WALLET_PATTERN)
    game_type: str = Field(..., min_length=1, max_length=50)
    session_token: str = Field(..., max_length=128)

    # Sign is checked by the validator so negative values reach the anomaly log
    score: float = 0
    distance: float = 0
    time_ms: int = 0

    fever_count: int = 0
    perfect_count: int = 0
    coin_count: int = 0
    potion_count: int = 0
    obstacles_passed: int = 0
    flap_count: int = 0
    tunnels_passed: int = 0
    ufos_passed: int = 0
    items_collected: Union[int, dict[str, int]] = 0

    difficulty: Optional[str] = Field(default=None, max_length=20)
    client_info: Optional[dict] = None

    @field_validator("items_collected")
    @classmethod
    def total_items(cls, v):
        # Cosmic Flap reports items per kind
        return sum(v.values()) if isinstance(v, dict) else v

    def to_submission(self) -> GameSubmission:
        return GameSubmission(
            wallet=self.wallet_address.lower(),
            game_type=self.game_type,
            score=self.score,
            distance=self.distance,
            time_ms=self.time_ms,
            coin_count=self.coin_count,
            potion_count=self.potion_count,
            fever_count=self.fever_count,
            perfect_count=self.perfect_count,
            obstacles_passed=self.obstacles_passed,
            flap_count=self.flap_count,
            tunnels_passed=self.tunnels_passed,
            ufos_passed=self.ufos_passed,
            items_collected=self.items_collected,
            difficulty=self.difficulty,
            client_info=self.client_info,
        )


def _client_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


DECISION_STATUS = {
    Reason.SUBMISSION_REJECTED: 422,
    Reason.RATE_LIMIT_EXCEEDED: 429,
}


# ═══════════════════════════════════════════════════════
#                 GAME SESSIONS
# ═══════════════════════════════════════════════════════

@app.post("/api/v1/game/session")
async def create_session(req: SessionRequest, request: Request, svc: Services = Depends(get_services)):
    wallet = req.wallet_address.lower()

    # Pre-flight quota check so an over-quota wallet never gets a token
    now = utcnow()
    try:
        history = await svc.store.recent_submission_times(wallet, now - DAY)
    except StoreUnavailable as e:
        raise ServiceUnavailable("Submission history unavailable") from e
    quota = check_rate_limit(history, now, svc.rules)
    if not quota.valid:
        svc.anomalies.log(
            wallet, "Rate limit exceeded",
            {"errors": quota.error_messages(), "recent_games_count": len(history)},
            **_client_meta(request),
        )
        return JSONResponse(
            status_code=429,
            content={
                "success": False,
                "reason": Reason.RATE_LIMIT_EXCEEDED.value,
                "errors": [v.to_dict() for v in quota.errors],
            },
        )

    session = await svc.sessions.create(wallet, req.game_type)
    return {
        "success": True,
        "session_token": session.token,
        "expires_at": session.expires_at.isoformat(),
    }


@app.post("/api/v1/game/record")
async def submit_record(req: RecordRequest, request: Request, svc: Services = Depends(get_services)):
    decision = await svc.gateway.submit(req.to_submission(), req.session_token, **_client_meta(request))
    if decision.accepted:
        return decision.to_dict()
    status = DECISION_STATUS.get(decision.reason, 403)
    return JSONResponse(status_code=status, content=decision.to_dict())


@app.get("/api/v1/game/record")
async def get_records(
    address: str, game_type: str = None, limit: int = 10,
    svc: Services = Depends(get_services),
):
    try:
        records = await svc.store.records_for_wallet(address.lower(), game_type, min(max(limit, 1), 100))
    except StoreUnavailable as e:
        raise ServiceUnavailable("Game records unavailable") from e
    high_score = max((r["score"] for r in records), default=0)
    return {"records": records, "high_score": high_score}


# ═══════════════════════════════════════════════════════
#                 ANOMALY REVIEW
# ═══════════════════════════════════════════════════════

@app.get("/api/v1/anomalies/suspicious-wallets")
async def get_suspicious_wallets(
    days: int = None, min_incidents: int = None,
    svc: Services = Depends(get_services),
):
    try:
        wallets = await svc.anomalies.suspicious_wallets(days, min_incidents)
    except StoreUnavailable as e:
        raise ServiceUnavailable("Anomaly log unavailable") from e
    return {"wallets": [
        dict(w, first_incident=w["first_incident"].isoformat(), last_incident=w["last_incident"].isoformat())
        for w in wallets
    ]}


@app.get("/api/v1/game/types")
async def get_game_types(svc: Services = Depends(get_services)):
    return {"game_types": svc.registry.game_types()}


# ═══════════════════════════════════════════════════════
#           BACKGROUND: SESSION JANITOR
# ═══════════════════════════════════════════════════════

async def session_janitor(sessions: SessionTokenManager):
    logger.info("Session janitor started")
    while True:
        try:
            await sessions.cleanup_expired()
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Session janitor error: {e}", exc_info=True)
        await asyncio.sleep(config.CLEANUP_INTERVAL_SECONDS)


# ═══════════════════════════════════════════════════════
#                    HEALTH
# ═══════════════════════════════════════════════════════

@app.get("/health")
@app.get("/api/v1/health")
async def health():
    return {"status": "ok", "service": "playguard", "version": VERSION}

@app.get("/")
async def root():
    return {"name": "PlayGuard", "description": "Gameplay integrity verification", "version": VERSION, "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("playguard.main:app", host=config.HOST, port=config.PORT, reload=True)
